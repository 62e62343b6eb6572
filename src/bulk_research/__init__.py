"""Bulk company research job runner."""

__version__ = "0.1.0"
