"""Configuration for the install pipeline."""
