"""Durable AI task queue with rate limiting, retries and crash recovery."""

__version__ = "0.1.0"
