"""Realtime chat synchronization engine and its message store."""

__version__ = "1.0.0"
