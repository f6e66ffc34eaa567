"""Asynchronous collectible generation: task tracking, event scanning and batch processing."""

__version__ = "0.1.0"
