"""Daemon-side components of a thick multi-network CNI plugin: config generation, shim client, plugin execution and CNI cache editing."""

__version__ = "0.1.0"