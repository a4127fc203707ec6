"""Tracker Sync - issue tracker integration and synchronization layer."""

__version__ = "0.1.0"
