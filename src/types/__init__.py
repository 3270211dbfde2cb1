"""
Type definitions for the job queue engine.
Contains input/output type definitions for all functions, grouped by module.
"""

from src.types.api import (
    EnqueueRequest,
    FailedJobSummary,
    GenericEnqueueRequest,
    HealthReport,
    JobProgressDetail,
    JobStatusResponse,
    JobSummary,
    QueueStats,
    StatusCounts,
    TypeStats,
    WorkerSlotInfo,
    WorkerSnapshot,
)
from src.types.job import (
    BackoffPolicy,
    Job,
    JobContext,
    JobResult,
    StateTransition,
)

__all__ = [
    # API types
    "EnqueueRequest",
    "GenericEnqueueRequest",
    "JobStatusResponse",
    "JobSummary",
    "FailedJobSummary",
    "JobProgressDetail",
    "StatusCounts",
    "TypeStats",
    "QueueStats",
    "WorkerSlotInfo",
    "WorkerSnapshot",
    "HealthReport",
    # Job types
    "BackoffPolicy",
    "Job",
    "JobContext",
    "JobResult",
    "StateTransition",
]
