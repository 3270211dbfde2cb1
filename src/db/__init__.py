"""
Database module.
Contains the durable job store, its models and connection helpers.
"""

from src.db.connection import create_engine, create_session_factory, session_scope
from src.db.models import Base, JobRecord, JobTransitionRecord
from src.db.repository import SqlJobStore

__all__ = [
    "create_engine",
    "create_session_factory",
    "session_scope",
    "Base",
    "JobRecord",
    "JobTransitionRecord",
    "SqlJobStore",
]
