"""Asyncio changed-block replication pipeline with hash dedup, LZ4 compression, destination handlers and stunnel/rsync tunnelling."""

__version__ = "0.1.0"