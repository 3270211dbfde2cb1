"""
In-memory job store.

Reference implementation of `JobStore` for a single process. Records are
indexed by (job_type, status) so statistics and per-type listings never scan
the whole table.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from src.constants import JobStatus
from src.errors import JobNotFoundError, JobQueueError, StoreUnavailableError
from src.store.base import (
    JobFilter,
    JobStore,
    QueryOrder,
    check_transition,
    precondition_holds,
)
from src.types.job import Job, StateTransition, utc_now

logger = logging.getLogger(__name__)


class MemoryJobStore(JobStore):
    """
    Dictionary-backed job store.

    Every method runs its critical section under one lock and returns deep
    copies, so callers never alias the canonical record.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._sequence: dict[str, int] = {}
        self._index: dict[tuple[str, JobStatus], set[str]] = defaultdict(set)
        self._counter = itertools.count()
        self._lock = asyncio.Lock()
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError("Memory job store is closed")

    def _index_add(self, job: Job) -> None:
        self._index[(job.job_type, job.status)].add(job.id)

    def _index_discard(self, job: Job) -> None:
        key = (job.job_type, job.status)
        ids = self._index.get(key)
        if ids is not None:
            ids.discard(job.id)
            if not ids:
                del self._index[key]

    async def create(self, job: Job) -> Job:
        async with self._lock:
            self._ensure_open()
            if job.id in self._jobs:
                raise JobQueueError(f"Job with ID {job.id} already exists", {"job_id": job.id})

            stored = job.model_copy(deep=True)
            stored.transitions = [
                StateTransition(from_status=None, to_status=stored.status, at=stored.created_at)
            ]
            stored.updated_at = stored.created_at
            self._jobs[stored.id] = stored
            self._sequence[stored.id] = next(self._counter)
            self._index_add(stored)

            logger.debug(
                "Created job record",
                extra={"job_id": stored.id, "job_type": stored.job_type, "status": stored.status.value},
            )
            return stored.model_copy(deep=True)

    async def get(self, job_id: str) -> Job:
        async with self._lock:
            self._ensure_open()
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    async def update(
        self,
        job_id: str,
        values: dict[str, Any],
        *,
        expected_status: Iterable[JobStatus],
        expected_attempt: int | None = None,
    ) -> Job | None:
        async with self._lock:
            self._ensure_open()
            current = self._jobs.get(job_id)
            if current is None:
                return None
            if not precondition_holds(current, expected_status, expected_attempt):
                return None

            now = values.get("updated_at") or utc_now()
            changes = dict(values)
            changes["updated_at"] = now

            new_status = changes.get("status")
            if new_status is not None:
                new_status = JobStatus(new_status)
                changes["status"] = new_status
                check_transition(job_id, current.status, new_status)
                if new_status != current.status:
                    changes["transitions"] = [
                        *current.transitions,
                        StateTransition(from_status=current.status, to_status=new_status, at=now),
                    ]

            updated = current.model_copy(update=changes, deep=True)
            self._index_discard(current)
            self._jobs[job_id] = updated
            self._index_add(updated)
            return updated.model_copy(deep=True)

    async def remove(self, job_id: str) -> bool:
        async with self._lock:
            self._ensure_open()
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            self._sequence.pop(job_id, None)
            self._index_discard(job)
            return True

    def _candidate_ids(self, job_filter: JobFilter) -> Iterable[str]:
        if job_filter.statuses is None and job_filter.job_type is None:
            return list(self._jobs)

        statuses = set(job_filter.statuses) if job_filter.statuses is not None else None
        ids: set[str] = set()
        for (job_type, status), members in self._index.items():
            if job_filter.job_type is not None and job_type != job_filter.job_type:
                continue
            if statuses is not None and status not in statuses:
                continue
            ids.update(members)
        return ids

    @staticmethod
    def _matches(job: Job, job_filter: JobFilter) -> bool:
        if job_filter.delay_due_before is not None:
            if job.delay_until is None or job.delay_until > job_filter.delay_due_before:
                return False
        if job_filter.finished_after is not None:
            if job.finished_at is None or job.finished_at < job_filter.finished_after:
                return False
        if job_filter.finished_before is not None:
            if job.finished_at is None or job.finished_at > job_filter.finished_before:
                return False
        if job_filter.updated_before is not None and job.updated_at > job_filter.updated_before:
            return False
        if job_filter.remove_on_complete is not None:
            if job.remove_on_complete != job_filter.remove_on_complete:
                return False
        if job_filter.remove_on_fail is not None:
            if job.remove_on_fail != job_filter.remove_on_fail:
                return False
        return True

    def _sort(self, jobs: list[Job], order: QueryOrder) -> list[Job]:
        seq = self._sequence
        if order == QueryOrder.DISPATCH:
            return sorted(jobs, key=lambda j: (-j.priority, j.created_at, seq.get(j.id, 0)))
        if order == QueryOrder.DELAY_DUE:
            return sorted(
                jobs,
                key=lambda j: (j.delay_until is None, j.delay_until or j.created_at, seq.get(j.id, 0)),
            )
        if order == QueryOrder.RECENTLY_FINISHED:
            return sorted(
                jobs,
                key=lambda j: (j.finished_at or j.updated_at, seq.get(j.id, 0)),
                reverse=True,
            )
        return sorted(jobs, key=lambda j: (j.created_at, seq.get(j.id, 0)))

    async def query(self, job_filter: JobFilter) -> list[Job]:
        async with self._lock:
            self._ensure_open()
            jobs = [
                self._jobs[job_id]
                for job_id in self._candidate_ids(job_filter)
                if self._matches(self._jobs[job_id], job_filter)
            ]
            jobs = self._sort(jobs, job_filter.order)

            start = job_filter.offset
            end = start + job_filter.limit if job_filter.limit is not None else None
            return [job.model_copy(deep=True) for job in jobs[start:end]]

    async def counts(self) -> dict[tuple[str, JobStatus], int]:
        async with self._lock:
            self._ensure_open()
            return {key: len(ids) for key, ids in self._index.items() if ids}

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            logger.info("Memory job store closed", extra={"job_count": len(self._jobs)})
