"""Version information for OrderSync."""

__version__ = "1.2.0"
