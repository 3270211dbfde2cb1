"""
Abstract job store.

The store exclusively owns canonical job records. All mutation goes through
the conditional `update`, keyed by job id with a status precondition, so two
racing transitions (a cancellation and a completion, say) can never both win.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from src.constants import ALLOWED_TRANSITIONS, JobStatus
from src.errors import InvalidTransitionError
from src.types.job import Job


class QueryOrder(StrEnum):
    """Result orderings supported by `JobStore.query`."""

    DISPATCH = "dispatch"  # priority desc, created_at asc
    OLDEST = "oldest"  # created_at asc
    DELAY_DUE = "delay_due"  # delay_until asc
    RECENTLY_FINISHED = "recently_finished"  # finished_at desc


@dataclass
class JobFilter:
    """Selection criteria for `JobStore.query`."""

    statuses: tuple[JobStatus, ...] | None = None
    job_type: str | None = None
    delay_due_before: datetime | None = None
    finished_after: datetime | None = None
    finished_before: datetime | None = None
    updated_before: datetime | None = None
    remove_on_complete: bool | None = None
    remove_on_fail: bool | None = None
    order: QueryOrder = QueryOrder.OLDEST
    limit: int | None = None
    offset: int = 0


def check_transition(job_id: str, from_status: JobStatus, to_status: JobStatus) -> None:
    """
    Validate a status change against the job state machine.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if from_status == to_status:
        return
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransitionError(job_id, from_status.value, to_status.value)


def precondition_holds(
    job: Job,
    expected_status: Iterable[JobStatus],
    expected_attempt: int | None,
) -> bool:
    """Check the compare-and-set precondition of an update."""
    if job.status not in set(expected_status):
        return False
    if expected_attempt is not None and job.attempts_made != expected_attempt:
        return False
    return True


class JobStore(ABC):
    """
    Storage capability set used by the engine.

    Implementations must make `update` atomic with respect to every other
    mutating call on the same job.
    """

    @abstractmethod
    async def create(self, job: Job) -> Job:
        """Persist a new job record and return the stored copy."""

    @abstractmethod
    async def get(self, job_id: str) -> Job:
        """
        Get a job by ID.

        Raises:
            JobNotFoundError: If the job does not exist.
        """

    @abstractmethod
    async def update(
        self,
        job_id: str,
        values: dict[str, Any],
        *,
        expected_status: Iterable[JobStatus],
        expected_attempt: int | None = None,
    ) -> Job | None:
        """
        Atomically apply `values` if the precondition holds.

        Args:
            job_id: The job identifier.
            values: Field values to set.
            expected_status: Statuses the job must currently be in.
            expected_attempt: If given, `attempts_made` must equal it.

        Returns:
            The updated job, or None if the precondition failed or the
            job no longer exists.

        Raises:
            InvalidTransitionError: If `values` requests a status change
                outside the state machine.
        """

    @abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Delete a job record. Returns True if it existed."""

    @abstractmethod
    async def query(self, job_filter: JobFilter) -> list[Job]:
        """Return jobs matching the filter, ordered and paginated."""

    @abstractmethod
    async def counts(self) -> dict[tuple[str, JobStatus], int]:
        """Return the number of jobs per (job_type, status)."""

    async def close(self) -> None:
        """Release backend resources."""
