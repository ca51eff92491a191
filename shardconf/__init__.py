"""Shard configuration controller, its client, and sharded key/value replica state."""

__version__ = "0.1.0"