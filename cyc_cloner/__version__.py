"""Version information for cyc-cloner."""

__version__ = "1.3.0"
