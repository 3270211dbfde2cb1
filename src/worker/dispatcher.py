"""
Priority dispatcher.

Hands the highest-priority ready job to an idle worker. Selecting a job and
marking it ACTIVE happens under one lock and through the store's
compare-and-set update, so no two workers ever claim the same job.
"""

import asyncio
import logging
from datetime import datetime

from src.constants import JobStatus
from src.observability.metrics import MetricsCollector, get_metrics
from src.store.base import JobFilter, JobStore, QueryOrder
from src.types.job import Job, utc_now

logger = logging.getLogger(__name__)


class PriorityDispatcher:
    """
    Selects ready jobs for workers.

    Ordering: priority descending, then creation order. Low priority jobs
    may starve under continuous high-priority load.
    """

    def __init__(
        self,
        store: JobStore,
        poll_interval: float = 1.0,
        batch_size: int = 10,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: The job store.
            poll_interval: Max seconds an idle worker sleeps between checks.
            batch_size: Waiting candidates fetched per claim attempt.
            metrics: Metrics collector.
        """
        self._store = store
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._metrics = metrics or get_metrics()

        self._claim_lock = asyncio.Lock()
        self._condition = asyncio.Condition()
        self._generation = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def notify(self) -> None:
        """Wake idle workers so they re-check for ready jobs."""
        async with self._condition:
            self._generation += 1
            self._condition.notify_all()

    async def close(self) -> None:
        """Release every waiting worker; subsequent waits return None."""
        self._closed = True
        await self.notify()

    async def reopen(self) -> None:
        self._closed = False

    async def promote_due(self, now: datetime | None = None) -> int:
        """
        Move delayed jobs whose delay has elapsed back to WAITING.

        Uses the conditional update, so a concurrent cancellation wins
        silently.

        Returns:
            Number of promoted jobs.
        """
        now = now or utc_now()
        due = await self._store.query(
            JobFilter(
                statuses=(JobStatus.DELAYED,),
                delay_due_before=now,
                order=QueryOrder.DELAY_DUE,
            )
        )

        promoted = 0
        for job in due:
            updated = await self._store.update(
                job.id,
                {"status": JobStatus.WAITING},
                expected_status={JobStatus.DELAYED},
            )
            if updated is not None:
                promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs")
            await self.notify()
        return promoted

    async def try_claim(self, worker_id: str) -> Job | None:
        """
        Claim the best ready job for a worker without waiting.

        Args:
            worker_id: The claiming worker slot.

        Returns:
            The job, already ACTIVE with its attempt counter incremented,
            or None if nothing is ready.
        """
        async with self._claim_lock:
            await self.promote_due()

            candidates = await self._store.query(
                JobFilter(
                    statuses=(JobStatus.WAITING,),
                    order=QueryOrder.DISPATCH,
                    limit=self.batch_size,
                )
            )

            for candidate in candidates:
                now = utc_now()
                claimed = await self._store.update(
                    candidate.id,
                    {
                        "status": JobStatus.ACTIVE,
                        "attempts_made": candidate.attempts_made + 1,
                        "progress": 0,
                        "processed_at": now,
                        "worker_id": worker_id,
                        "updated_at": now,
                    },
                    expected_status={JobStatus.WAITING},
                    expected_attempt=candidate.attempts_made,
                )
                if claimed is None:
                    continue

                self._metrics.record_job_claimed(worker_id)
                logger.info(
                    "Claimed job",
                    extra={
                        "job_id": claimed.id,
                        "job_type": claimed.job_type,
                        "worker_id": worker_id,
                        "attempt": claimed.attempts_made,
                        "priority": claimed.priority,
                    },
                )
                return claimed

        return None

    async def _seconds_until_next_due(self) -> float | None:
        upcoming = await self._store.query(
            JobFilter(
                statuses=(JobStatus.DELAYED,),
                order=QueryOrder.DELAY_DUE,
                limit=1,
            )
        )
        if not upcoming or upcoming[0].delay_until is None:
            return None
        return max(0.0, (upcoming[0].delay_until - utc_now()).total_seconds())

    async def next_ready(self, worker_id: str, timeout: float | None = None) -> Job | None:
        """
        Claim the next ready job, suspending until one is available.

        Args:
            worker_id: The claiming worker slot.
            timeout: Max seconds to wait. None waits until a job is
                claimed or the dispatcher is closed.

        Returns:
            The claimed job, or None on timeout or close.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while not self._closed:
            generation = self._generation

            job = await self.try_claim(worker_id)
            if job is not None:
                return job

            wait = self.poll_interval
            until_due = await self._seconds_until_next_due()
            if until_due is not None:
                wait = min(wait, until_due)
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)

            async with self._condition:
                if generation != self._generation or self._closed:
                    continue
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=wait)
                except TimeoutError:
                    pass

        return None
