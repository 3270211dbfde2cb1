"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (claimed by a worker)
    - DELAYED -> WAITING (delay_until reached)
    - ACTIVE -> COMPLETED (handler succeeded)
    - ACTIVE -> DELAYED (handler failed, retry scheduled)
    - ACTIVE -> FAILED (handler failed, attempts exhausted)
    - WAITING/DELAYED/ACTIVE -> CANCELLED (explicit cancellation)
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(StrEnum):
    """Job priority levels for queue ordering."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class BackoffKind(StrEnum):
    """Retry delay strategies."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# Priority weights for ordering (higher = processed first).
# Persisted records store the weight, so these values must not change.
PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.LOW: 5,
    JobPriority.NORMAL: 10,
    JobPriority.HIGH: 15,
    JobPriority.CRITICAL: 20,
}

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

CANCELLABLE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.WAITING, JobStatus.DELAYED, JobStatus.ACTIVE}
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.WAITING: frozenset({JobStatus.ACTIVE, JobStatus.CANCELLED}),
    JobStatus.DELAYED: frozenset({JobStatus.WAITING, JobStatus.CANCELLED}),
    JobStatus.ACTIVE: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.DELAYED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
        }
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PRIORITY = JobPriority.NORMAL
DEFAULT_TYPED_BACKOFF_KIND = BackoffKind.EXPONENTIAL
DEFAULT_TYPED_BACKOFF_DELAY_MS = 1000
DEFAULT_GENERIC_BACKOFF_KIND = BackoffKind.FIXED
DEFAULT_GENERIC_BACKOFF_DELAY_MS = 5000
# Upper bound for any single retry delay (7 days)
MAX_BACKOFF_DELAY_MS = 7 * 24 * 60 * 60 * 1000
# Upper bound for the initial enqueue delay (365 days)
MAX_ENQUEUE_DELAY_MS = 365 * 24 * 60 * 60 * 1000
DEFAULT_GENERIC_PRIORITY = 1
DEFAULT_LIST_LIMIT = 10
DEFAULT_HEALTH_FAILURE_WINDOW_SECONDS = 300

# Job types
GENERIC_JOB_TYPE = "generic"
JOB_TYPE_DATA_PROCESSING = "data-processing"
JOB_TYPE_IMAGE_PROCESSING = "image-processing"
JOB_TYPE_EMAIL_SENDING = "email-sending"
JOB_TYPE_REPORT_GENERATION = "report-generation"

BUILTIN_JOB_TYPES: tuple[str, ...] = (
    JOB_TYPE_DATA_PROCESSING,
    JOB_TYPE_IMAGE_PROCESSING,
    JOB_TYPE_EMAIL_SENDING,
    JOB_TYPE_REPORT_GENERATION,
)

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOB_RETRIES = "job_retries_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_WORKERS_BUSY = "workers_busy"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_EXECUTE_JOB = "execute_job"
