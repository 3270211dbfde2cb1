"""
Job Queue Engine

An asyncio job queue with priority dispatch to a pool of concurrent workers,
retry with fixed or exponential backoff, progress reporting, and queue
statistics and health over a pluggable job store.
"""

__version__ = "1.0.0"
