"""
Request and response type definitions for the engine's public interface.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.constants import (
    DEFAULT_GENERIC_PRIORITY,
    DEFAULT_MAX_ATTEMPTS,
    MAX_ENQUEUE_DELAY_MS,
    JobPriority,
    JobStatus,
)
from src.types.job import BackoffPolicy, Job


class EnqueueRequest(BaseModel):
    """Validated options for enqueuing a typed job."""

    job_type: str = Field(..., min_length=1, description="Handler selector")
    payload: dict[str, Any] = Field(..., description="Job payload data")
    priority: JobPriority = Field(default=JobPriority.NORMAL, description="Job priority")
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, description="Maximum attempts")
    delay_ms: int = Field(
        default=0, ge=0, le=MAX_ENQUEUE_DELAY_MS, description="Delay before first dispatch"
    )
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    backoff: BackoffPolicy | None = None


class GenericEnqueueRequest(BaseModel):
    """Validated options for the legacy generic enqueue path."""

    payload: dict[str, Any] = Field(..., description="Job payload data")
    priority: int = Field(default=DEFAULT_GENERIC_PRIORITY, ge=0, description="Numeric priority")
    attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, description="Maximum attempts")


class JobStatusResponse(BaseModel):
    """Status view of a single job."""

    id: str
    job_type: str
    status: JobStatus
    progress: int
    attempts_made: int
    max_attempts: int
    result: dict[str, Any] | None
    failure_reason: str | None
    created_at: datetime
    processed_at: datetime | None
    finished_at: datetime | None
    delay_until: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        """Build the status view from a job record."""
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            progress=job.progress,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            result=job.result,
            failure_reason=job.failure_reason,
            created_at=job.created_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
            delay_until=job.delay_until,
        )


class JobSummary(BaseModel):
    """Short listing entry for a job."""

    id: str
    job_type: str
    status: JobStatus
    priority: int
    progress: int
    attempts_made: int
    payload: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobSummary":
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            priority=job.priority,
            progress=job.progress,
            attempts_made=job.attempts_made,
            payload=job.payload,
            created_at=job.created_at,
        )


class FailedJobSummary(BaseModel):
    """Listing entry for a terminally failed job."""

    id: str
    job_type: str
    payload: dict[str, Any]
    failure_reason: str | None
    attempts_made: int
    finished_at: datetime | None


class JobProgressDetail(BaseModel):
    """Detailed progress view including in-flight processing time."""

    id: str
    job_type: str
    status: JobStatus
    progress: int
    attempts_made: int
    max_attempts: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error: str | None
    processing_time_ms: float | None
    created_at: datetime
    processed_at: datetime | None
    finished_at: datetime | None


class StatusCounts(BaseModel):
    """Job counts per status."""

    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return (
            self.waiting
            + self.delayed
            + self.active
            + self.completed
            + self.failed
            + self.cancelled
        )

    def add(self, status: JobStatus, count: int) -> None:
        """Accumulate a count for a status."""
        setattr(self, status.value, getattr(self, status.value) + count)


class TypeStats(BaseModel):
    """Job counts per status for one job type."""

    job_type: str
    counts: StatusCounts


class QueueStats(BaseModel):
    """Overall and per-type queue statistics."""

    overall: StatusCounts
    by_job_type: list[TypeStats]

    def for_type(self, job_type: str) -> StatusCounts | None:
        """Get the counts for a job type, if listed."""
        for entry in self.by_job_type:
            if entry.job_type == job_type:
                return entry.counts
        return None


class WorkerSlotInfo(BaseModel):
    """State of a single worker slot."""

    worker_id: str
    busy: bool
    job_id: str | None = None


class WorkerSnapshot(BaseModel):
    """Pool-level worker view."""

    count: int
    active: int
    slots: list[WorkerSlotInfo]

    @property
    def idle(self) -> int:
        return self.count - self.active


class HealthReport(BaseModel):
    """Queue health summary."""

    status: str
    worker_count: int
    active_worker_count: int
    recent_failures: bool
    queue_size: int
    processing: int
    last_checked: datetime
