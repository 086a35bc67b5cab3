"""Library catalog and lending tracker service."""

__version__ = "1.0.0"
