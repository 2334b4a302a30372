"""Bidirectional sync between local work items and remote issue trackers."""

__version__ = "0.1.0"
