"""Offline cache of GitHub issues and comments."""

__version__ = "0.1.0"
