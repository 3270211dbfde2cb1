"""
Periodic sweeper for delayed, abandoned and retained jobs.

The sweeper runs on its own schedule to:
1. Promote DELAYED jobs whose delay has elapsed back to WAITING
2. Purge COMPLETED jobs flagged remove_on_complete once their retention
   window has passed (and FAILED jobs flagged remove_on_fail)
3. Recover ACTIVE jobs whose worker stopped heartbeating, as a failed
   attempt (retried or failed per the job's attempts)

All steps are eventual; none runs synchronously with a transition.
"""

import asyncio
import logging
from datetime import timedelta

from src.constants import JobStatus
from src.store.base import JobFilter, JobStore, QueryOrder
from src.types.job import utc_now
from src.worker.backoff import failure_values
from src.worker.dispatcher import PriorityDispatcher

logger = logging.getLogger(__name__)


class Sweeper:
    """
    Delay promotion, stale job recovery and retention sweep.
    """

    def __init__(
        self,
        dispatcher: PriorityDispatcher,
        store: JobStore,
        interval_seconds: float = 1.0,
        completed_retention_seconds: float = 60.0,
        failed_retention_seconds: float = 86400.0,
        stale_job_timeout_seconds: float = 60.0,
    ):
        """
        Initialize the sweeper.

        Args:
            dispatcher: Dispatcher performing the promotion.
            store: The job store.
            interval_seconds: Seconds between sweeps.
            completed_retention_seconds: How long completed jobs flagged
                for removal stay readable.
            failed_retention_seconds: Same, for failed jobs.
            stale_job_timeout_seconds: Age of the last update after which
                an ACTIVE job counts as abandoned.
        """
        self._dispatcher = dispatcher
        self._store = store
        self.interval = interval_seconds
        self.completed_retention = timedelta(seconds=completed_retention_seconds)
        self.failed_retention = timedelta(seconds=failed_retention_seconds)
        self.stale_timeout = timedelta(seconds=stale_job_timeout_seconds)
        self._running = False

    async def start(self) -> None:
        """Start the sweep loop."""
        logger.info(f"Sweeper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in sweeper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Sweeper stopped")

    async def stop(self) -> None:
        """Stop the sweeper."""
        logger.info("Sweeper stopping")
        self._running = False

    async def purge_expired(self) -> int:
        """
        Delete terminal jobs whose retention window has elapsed.

        Returns:
            Number of purged jobs.
        """
        now = utc_now()
        expired = await self._store.query(
            JobFilter(
                statuses=(JobStatus.COMPLETED,),
                remove_on_complete=True,
                finished_before=now - self.completed_retention,
                order=QueryOrder.OLDEST,
            )
        )
        expired += await self._store.query(
            JobFilter(
                statuses=(JobStatus.FAILED,),
                remove_on_fail=True,
                finished_before=now - self.failed_retention,
                order=QueryOrder.OLDEST,
            )
        )

        purged = 0
        for job in expired:
            if await self._store.remove(job.id):
                purged += 1

        if purged:
            logger.info(f"Purged {purged} finished jobs")
        return purged

    async def recover_stale(self) -> int:
        """
        Record abandoned ACTIVE jobs as failed attempts.

        A job is abandoned when nothing (heartbeat, progress) has touched
        it for longer than the stale timeout. The recovery write is guarded
        by the attempt count, so a worker that is merely slow and finishes
        later has its outcome discarded.

        Returns:
            Number of recovered jobs.
        """
        now = utc_now()
        stale = await self._store.query(
            JobFilter(
                statuses=(JobStatus.ACTIVE,),
                updated_before=now - self.stale_timeout,
                order=QueryOrder.OLDEST,
            )
        )

        recovered = 0
        for job in stale:
            attempt = job.attempts_made
            updated = await self._store.update(
                job.id,
                failure_values(job, attempt, "Worker lost: no heartbeat", now),
                expected_status={JobStatus.ACTIVE},
                expected_attempt=attempt,
            )
            if updated is None:
                continue
            recovered += 1
            logger.warning(
                "Recovered stale job",
                extra={
                    "job_id": job.id,
                    "worker_id": job.worker_id,
                    "attempt": attempt,
                    "status": updated.status.value,
                },
            )

        return recovered

    async def run_once(self) -> tuple[int, int, int]:
        """
        Run one sweep (for testing or cron-style execution).

        Returns:
            Tuple of (promoted, recovered, purged) job counts.
        """
        recovered = await self.recover_stale()
        promoted = await self._dispatcher.promote_due()
        purged = await self.purge_expired()
        return promoted, recovered, purged
