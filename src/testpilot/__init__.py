"""Cached, retrying, load-balanced test orchestration."""

__version__ = "0.1.0"
