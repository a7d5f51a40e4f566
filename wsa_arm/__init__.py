"""Install ARM translation layers into Windows Subsystem for Android images."""

from .__version__ import __version__


__all__ = ["__version__"]
