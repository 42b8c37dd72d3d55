"""Offline-first inventory count sync: device agent and server contract."""

__version__ = "0.3.0"
