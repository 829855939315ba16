"""CineRelay: catalog extraction and byte-range media relay."""

__version__ = "1.0.0"
