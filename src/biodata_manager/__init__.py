"""Reproducible bio-data fetch manager."""

__version__ = "0.3.0"
