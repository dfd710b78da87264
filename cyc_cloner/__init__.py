"""Partition-level disk backup and parallel restore for Windows, Linux and dual-boot disks."""

from .__version__ import __version__


__all__ = ["__version__"]
