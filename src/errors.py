"""
Error taxonomy for the job queue engine.

Terminal failure after exhausted retries is not an exception: it is the
FAILED job status, reported through status queries.
"""

from typing import Any


class JobQueueError(Exception):
    """Base exception for the job queue engine."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class JobNotFoundError(JobQueueError):
    """Raised when a job id is unknown or the job was already purged."""

    def __init__(self, job_id: str):
        super().__init__(f"Job with ID {job_id} not found", {"job_id": job_id})
        self.job_id = job_id


class JobValidationError(JobQueueError):
    """Raised when an enqueue request or progress value is rejected."""


class HandlerFailure(JobQueueError):
    """
    Raised by a handler to fail the current attempt.

    Any other exception escaping a handler is treated the same way.
    """


class InvalidTransitionError(JobQueueError):
    """Raised when a status change is not part of the job state machine."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Invalid transition {from_status} -> {to_status} for job {job_id}",
            {"job_id": job_id, "from_status": from_status, "to_status": to_status},
        )


class StoreUnavailableError(JobQueueError):
    """Raised by every store operation while the backend is unavailable."""
