"""
Queue monitor.

Read-only statistics, health and progress views over the job store. Reads
are best-effort snapshots taken while workers keep mutating jobs.
"""

import logging
from datetime import timedelta

from src.constants import (
    DEFAULT_HEALTH_FAILURE_WINDOW_SECONDS,
    DEFAULT_LIST_LIMIT,
    JobStatus,
)
from src.observability.metrics import MetricsCollector, get_metrics
from src.store.base import JobFilter, JobStore, QueryOrder
from src.types.api import (
    FailedJobSummary,
    HealthReport,
    JobProgressDetail,
    JobSummary,
    QueueStats,
    StatusCounts,
    TypeStats,
    WorkerSnapshot,
)
from src.types.job import utc_now
from src.worker.handlers import HandlerRegistry
from src.worker.pool import WorkerPool

logger = logging.getLogger(__name__)


class QueueMonitor:
    """
    Aggregates queue and worker state.

    Never mutates the store.
    """

    def __init__(
        self,
        store: JobStore,
        pool: WorkerPool,
        registry: HandlerRegistry,
        failure_window_seconds: float = DEFAULT_HEALTH_FAILURE_WINDOW_SECONDS,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._pool = pool
        self._registry = registry
        self.failure_window = timedelta(seconds=failure_window_seconds)
        self._metrics = metrics or get_metrics()

    async def stats(self) -> QueueStats:
        """
        Job counts per status, overall and per job type.

        Registered types are always listed, with zero counts if idle.
        """
        counts = await self._store.counts()

        overall = StatusCounts()
        per_type: dict[str, StatusCounts] = {
            job_type: StatusCounts() for job_type in self._registry.list_types()
        }
        for (job_type, status), count in counts.items():
            overall.add(status, count)
            per_type.setdefault(job_type, StatusCounts()).add(status, count)

        for status in JobStatus:
            self._metrics.update_queue_depth(status.value, getattr(overall, status.value))

        return QueueStats(
            overall=overall,
            by_job_type=[
                TypeStats(job_type=job_type, counts=type_counts)
                for job_type, type_counts in sorted(per_type.items())
            ],
        )

    def worker_snapshot(self) -> WorkerSnapshot:
        """How many slots exist and how many are executing a job."""
        return self._pool.snapshot()

    async def has_recent_failures(self) -> bool:
        """Check if any job entered FAILED within the failure window."""
        recent = await self._store.query(
            JobFilter(
                statuses=(JobStatus.FAILED,),
                finished_after=utc_now() - self.failure_window,
                order=QueryOrder.RECENTLY_FINISHED,
                limit=1,
            )
        )
        return bool(recent)

    async def health(self) -> HealthReport:
        """
        Queue health.

        Healthy iff at least one worker slot exists and no job failed
        within the failure window.
        """
        stats = await self.stats()
        workers = self.worker_snapshot()
        recent_failures = await self.has_recent_failures()

        healthy = workers.count > 0 and not recent_failures
        if not healthy:
            logger.warning(
                "Queue unhealthy",
                extra={"worker_count": workers.count, "recent_failures": recent_failures},
            )

        return HealthReport(
            status="healthy" if healthy else "unhealthy",
            worker_count=workers.count,
            active_worker_count=workers.active,
            recent_failures=recent_failures,
            queue_size=stats.overall.waiting + stats.overall.delayed,
            processing=stats.overall.active,
            last_checked=utc_now(),
        )

    async def job_progress(self, job_id: str) -> JobProgressDetail:
        """
        Detailed progress of one job.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self._store.get(job_id)
        return JobProgressDetail(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            progress=job.progress,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            payload=job.payload,
            result=job.result,
            error=job.failure_reason or job.last_error,
            processing_time_ms=job.processing_time_ms(),
            created_at=job.created_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
        )

    async def list_by_type(
        self,
        job_type: str,
        status: JobStatus = JobStatus.WAITING,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[JobSummary]:
        """Jobs of one type in one status, oldest first."""
        jobs = await self._store.query(
            JobFilter(
                statuses=(JobStatus(status),),
                job_type=job_type,
                order=QueryOrder.OLDEST,
                limit=limit,
            )
        )
        return [JobSummary.from_job(job) for job in jobs]

    async def pending_jobs(
        self,
        limit: int = DEFAULT_LIST_LIMIT,
        job_type: str | None = None,
    ) -> list[JobSummary]:
        """Waiting jobs in dispatch order."""
        jobs = await self._store.query(
            JobFilter(
                statuses=(JobStatus.WAITING,),
                job_type=job_type,
                order=QueryOrder.DISPATCH,
                limit=limit,
            )
        )
        return [JobSummary.from_job(job) for job in jobs]

    async def active_jobs(
        self,
        limit: int = DEFAULT_LIST_LIMIT,
        job_type: str | None = None,
    ) -> list[JobSummary]:
        """Jobs currently executing."""
        jobs = await self._store.query(
            JobFilter(
                statuses=(JobStatus.ACTIVE,),
                job_type=job_type,
                order=QueryOrder.OLDEST,
                limit=limit,
            )
        )
        return [JobSummary.from_job(job) for job in jobs]

    async def failed_jobs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[FailedJobSummary]:
        """Terminally failed jobs, most recent first."""
        jobs = await self._store.query(
            JobFilter(
                statuses=(JobStatus.FAILED,),
                order=QueryOrder.RECENTLY_FINISHED,
                limit=limit,
            )
        )
        return [
            FailedJobSummary(
                id=job.id,
                job_type=job.job_type,
                payload=job.payload,
                failure_reason=job.failure_reason,
                attempts_made=job.attempts_made,
                finished_at=job.finished_at,
            )
            for job in jobs
        ]
