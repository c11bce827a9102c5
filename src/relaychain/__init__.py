"""Proxy chain instance runner."""

__version__ = "0.1.0"
