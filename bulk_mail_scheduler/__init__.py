"""Scheduled, rate-limited bulk email dispatch."""

__version__ = "0.3.0"
