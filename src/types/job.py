"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel, Field

from src.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    DEFAULT_TYPED_BACKOFF_DELAY_MS,
    DEFAULT_TYPED_BACKOFF_KIND,
    MAX_BACKOFF_DELAY_MS,
    PRIORITY_WEIGHTS,
    TERMINAL_STATUSES,
    BackoffKind,
    JobStatus,
)

if TYPE_CHECKING:
    from src.worker.progress import ProgressReporter


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """Generate an opaque job identifier."""
    return str(uuid4())


class BackoffPolicy(BaseModel):
    """Delay policy applied between a failed attempt and the next retry."""

    kind: BackoffKind = DEFAULT_TYPED_BACKOFF_KIND
    base_delay_ms: int = Field(default=DEFAULT_TYPED_BACKOFF_DELAY_MS, ge=0, le=MAX_BACKOFF_DELAY_MS)


class StateTransition(BaseModel):
    """A single recorded status change."""

    from_status: JobStatus | None
    to_status: JobStatus
    at: datetime


class Job(BaseModel):
    """
    Canonical job record.

    Owned by the job store; everything else works on copies.
    """

    id: str = Field(default_factory=new_job_id)
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = PRIORITY_WEIGHTS[DEFAULT_PRIORITY]
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    attempts_made: int = Field(default=0, ge=0)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    status: JobStatus = JobStatus.WAITING
    delay_until: datetime | None = None
    progress: int = Field(default=0, ge=0, le=100)
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    last_error: str | None = None
    worker_id: str | None = None
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)
    transitions: list[StateTransition] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a terminal state."""
        return self.status in TERMINAL_STATUSES

    def processing_time_ms(self, now: datetime | None = None) -> float | None:
        """Duration of the current or most recent attempt in milliseconds."""
        if self.processed_at is None:
            return None
        end = self.finished_at or now or utc_now()
        return (end - self.processed_at).total_seconds() * 1000

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, status={self.status}, "
            f"attempt={self.attempts_made}/{self.max_attempts})"
        )


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Carries the payload and the progress side channel for one attempt.
    """

    job_id: str
    job_type: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    worker_id: str
    progress: "ProgressReporter"

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
