"""
Retry backoff policy.

Pure functions deciding whether a failed job is retried and when.
"""

from datetime import datetime, timedelta
from typing import Any

from src.constants import MAX_BACKOFF_DELAY_MS, BackoffKind, JobStatus
from src.types.job import BackoffPolicy, Job


def next_delay(policy: BackoffPolicy, attempts_made: int) -> int:
    """
    Compute the delay before the next attempt.

    Args:
        policy: The job's backoff policy.
        attempts_made: Attempts made so far, including the one that failed.

    Returns:
        Delay in milliseconds. Fixed policies return the base delay;
        exponential policies return base * 2^(attempts_made - 1). Either
        is capped at MAX_BACKOFF_DELAY_MS.

    Raises:
        ValueError: If attempts_made is below 1 or the base delay is negative.
    """
    if attempts_made < 1:
        raise ValueError(f"attempts_made must be >= 1, got {attempts_made}")
    if policy.base_delay_ms < 0:
        raise ValueError(f"base_delay_ms must be >= 0, got {policy.base_delay_ms}")

    if policy.kind == BackoffKind.FIXED:
        delay = policy.base_delay_ms
    else:
        delay = policy.base_delay_ms * 2 ** (attempts_made - 1)
    return min(delay, MAX_BACKOFF_DELAY_MS)


def should_retry(attempts_made: int, max_attempts: int) -> bool:
    """Check if a failed job gets another attempt."""
    return attempts_made < max_attempts


def retry_at(policy: BackoffPolicy, attempts_made: int, now: datetime) -> datetime:
    """Instant at which a failed job becomes dispatchable again."""
    return now + timedelta(milliseconds=next_delay(policy, attempts_made))


def failure_values(job: Job, attempt: int, error: str, now: datetime) -> dict[str, Any]:
    """
    Store values recording a failed attempt.

    DELAYED until the backoff elapses while attempts remain, FAILED
    otherwise.
    """
    if should_retry(attempt, job.max_attempts):
        return {
            "status": JobStatus.DELAYED,
            "delay_until": retry_at(job.backoff, attempt, now),
            "last_error": error,
            "worker_id": None,
            "updated_at": now,
        }
    return {
        "status": JobStatus.FAILED,
        "failure_reason": error,
        "last_error": error,
        "finished_at": now,
        "worker_id": None,
        "updated_at": now,
    }
