"""Storage layer for a media streaming site."""

__version__ = "0.1.0"
