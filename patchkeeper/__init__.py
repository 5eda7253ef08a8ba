"""Patch server lifecycle maintenance and air-gap synchronization."""

__version__ = "0.1.0"
