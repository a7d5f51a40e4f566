"""Image, filesystem and mount operations backed by external tools."""
