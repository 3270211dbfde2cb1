"""
Job store module.
Contains the storage interface and the in-memory reference implementation.
"""

from src.store.base import JobFilter, JobStore, QueryOrder, check_transition
from src.store.memory import MemoryJobStore

__all__ = [
    "JobStore",
    "JobFilter",
    "QueryOrder",
    "check_transition",
    "MemoryJobStore",
]
