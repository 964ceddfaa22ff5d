"""Migrate a Raspberry Pi from SD card boot to NVMe boot."""

from .__version__ import __version__


__all__ = ["__version__"]
