"""Thumbnail cache engine: remote gallery scan, change detection, derived image cache."""

__version__ = "0.1.0"
