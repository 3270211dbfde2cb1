"""
Job queue engine.

Composition root: builds the job store, dispatcher, worker pool, sweeper
and monitor, wires them by reference, and exposes the enqueue/query/cancel
interface consumed by outer layers.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from src.config import Settings, get_settings
from src.constants import (
    CANCELLABLE_STATUSES,
    DEFAULT_GENERIC_BACKOFF_KIND,
    DEFAULT_GENERIC_PRIORITY,
    DEFAULT_LIST_LIMIT,
    DEFAULT_TYPED_BACKOFF_KIND,
    GENERIC_JOB_TYPE,
    PRIORITY_WEIGHTS,
    SPAN_ENQUEUE_JOB,
    JobPriority,
    JobStatus,
)
from src.errors import JobValidationError
from src.monitor.service import QueueMonitor
from src.observability.metrics import MetricsCollector, get_metrics
from src.observability.tracing import get_tracer
from src.store.base import JobStore
from src.store.memory import MemoryJobStore
from src.sweeper.main import Sweeper
from src.types.api import (
    EnqueueRequest,
    FailedJobSummary,
    GenericEnqueueRequest,
    HealthReport,
    JobProgressDetail,
    JobStatusResponse,
    JobSummary,
    QueueStats,
    WorkerSnapshot,
)
from src.types.job import BackoffPolicy, Job, utc_now
from src.worker.dispatcher import PriorityDispatcher
from src.worker.handlers import HandlerRegistry, create_default_registry
from src.worker.pool import WorkerPool

logger = logging.getLogger(__name__)


class JobQueueEngine:
    """
    Public entry point of the job queue.

    Usage:
        async with JobQueueEngine(MemoryJobStore(), create_default_registry()) as engine:
            job_id = await engine.enqueue("email-sending", {"recipient": "a@x.com"})
            status = await engine.wait_for(job_id)
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        *,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        concurrency: int | None = None,
    ):
        """
        Wire the engine components.

        Args:
            store: The job store (shared mutable state).
            registry: Handler lookup by job type.
            settings: Engine settings. Defaults to environment settings.
            metrics: Metrics collector. Defaults to the global collector.
            concurrency: Worker slots; overrides settings.
        """
        self.settings = settings or get_settings()
        self.store = store
        self.registry = registry
        self._metrics = metrics or get_metrics()

        self.dispatcher = PriorityDispatcher(
            store,
            poll_interval=self.settings.worker_poll_interval_seconds,
            batch_size=self.settings.dispatcher_batch_size,
            metrics=self._metrics,
        )
        self.pool = WorkerPool(
            self.dispatcher,
            store,
            registry,
            concurrency=concurrency or self.settings.worker_concurrency,
            poll_interval=self.settings.worker_poll_interval_seconds,
            metrics=self._metrics,
            heartbeat_interval=self.settings.worker_heartbeat_interval_seconds,
        )
        self.sweeper = Sweeper(
            self.dispatcher,
            store,
            interval_seconds=self.settings.sweeper_interval_seconds,
            completed_retention_seconds=self.settings.completed_retention_seconds,
            failed_retention_seconds=self.settings.failed_retention_seconds,
            stale_job_timeout_seconds=self.settings.stale_job_timeout_seconds,
        )
        self.monitor = QueueMonitor(
            store,
            self.pool,
            registry,
            failure_window_seconds=self.settings.health_failure_window_seconds,
            metrics=self._metrics,
        )
        self._sweeper_task: asyncio.Task | None = None

    async def __aenter__(self) -> "JobQueueEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Start the worker pool and the sweeper."""
        logger.info("Job queue engine starting")
        await self.pool.start()
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self.sweeper.start())

    async def stop(self) -> None:
        """Stop the sweeper and the pool; in-flight attempts finish first."""
        logger.info("Job queue engine stopping")
        if self._sweeper_task is not None:
            await self.sweeper.stop()
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        await self.pool.stop()

    async def close(self) -> None:
        """Stop the engine and release the store."""
        await self.stop()
        await self.store.close()

    # ------------------------------------------------------------------
    # Producer interface
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: JobPriority | str = JobPriority.NORMAL,
        max_attempts: int | None = None,
        delay_ms: int = 0,
        remove_on_complete: bool = True,
        remove_on_fail: bool = False,
        backoff: BackoffPolicy | dict[str, Any] | None = None,
    ) -> str:
        """
        Enqueue a typed job.

        Args:
            job_type: Selects the handler.
            payload: Passed verbatim to the handler.
            priority: low, normal, high or critical.
            max_attempts: Attempts before terminal failure.
            delay_ms: Delay before the job becomes dispatchable.
            remove_on_complete: Purge the job some time after completion.
            remove_on_fail: Purge the job some time after terminal failure.
            backoff: Retry policy. Defaults to exponential from 1000ms.

        Returns:
            The new job id.

        Raises:
            JobValidationError: If any option is invalid. No job is created.
        """
        try:
            request = EnqueueRequest(
                job_type=job_type,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts if max_attempts is not None else self.settings.default_max_attempts,
                delay_ms=delay_ms,
                remove_on_complete=remove_on_complete,
                remove_on_fail=remove_on_fail,
                backoff=backoff,
            )
        except ValidationError as e:
            raise JobValidationError(
                f"Invalid enqueue request: {e.error_count()} validation error(s)",
                {"errors": e.errors(include_url=False, include_context=False)},
            ) from e

        policy = request.backoff or BackoffPolicy(
            kind=DEFAULT_TYPED_BACKOFF_KIND,
            base_delay_ms=self.settings.typed_backoff_delay_ms,
        )
        job = self._build_job(
            job_type=request.job_type,
            payload=request.payload,
            priority=PRIORITY_WEIGHTS[request.priority],
            max_attempts=request.max_attempts,
            backoff=policy,
            delay_ms=request.delay_ms,
            remove_on_complete=request.remove_on_complete,
            remove_on_fail=request.remove_on_fail,
        )
        return await self._submit(job)

    async def enqueue_generic(
        self,
        payload: dict[str, Any],
        *,
        priority: int = DEFAULT_GENERIC_PRIORITY,
        attempts: int | None = None,
    ) -> str:
        """
        Enqueue through the legacy generic path.

        Numeric priority, fixed 5000ms backoff, handled by the default
        handler unless one is registered for the generic type.

        Raises:
            JobValidationError: If any option is invalid.
        """
        try:
            request = GenericEnqueueRequest(
                payload=payload,
                priority=priority,
                attempts=attempts if attempts is not None else self.settings.default_max_attempts,
            )
        except ValidationError as e:
            raise JobValidationError(
                f"Invalid enqueue request: {e.error_count()} validation error(s)",
                {"errors": e.errors(include_url=False, include_context=False)},
            ) from e

        job = self._build_job(
            job_type=GENERIC_JOB_TYPE,
            payload=request.payload,
            priority=request.priority,
            max_attempts=request.attempts,
            backoff=BackoffPolicy(
                kind=DEFAULT_GENERIC_BACKOFF_KIND,
                base_delay_ms=self.settings.generic_backoff_delay_ms,
            ),
            delay_ms=0,
            remove_on_complete=True,
            remove_on_fail=False,
        )
        return await self._submit(job)

    @staticmethod
    def _build_job(
        *,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        max_attempts: int,
        backoff: BackoffPolicy,
        delay_ms: int,
        remove_on_complete: bool,
        remove_on_fail: bool,
    ) -> Job:
        now = utc_now()
        delayed = delay_ms > 0
        return Job(
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            backoff=backoff,
            status=JobStatus.DELAYED if delayed else JobStatus.WAITING,
            delay_until=now + timedelta(milliseconds=delay_ms) if delayed else None,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            created_at=now,
            updated_at=now,
        )

    async def _submit(self, job: Job) -> str:
        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job_type", job.job_type)
            span.set_attribute("priority", job.priority)
            created = await self.store.create(job)
            span.set_attribute("job_id", created.id)

        self._metrics.record_job_enqueued(created.job_type, created.priority)
        logger.info(
            "Job enqueued",
            extra={
                "job_id": created.id,
                "job_type": created.job_type,
                "priority": created.priority,
                "status": created.status.value,
            },
        )
        await self.dispatcher.notify()
        return created.id

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a job.

        Waiting and delayed jobs are cancelled immediately. An active job's
        handler keeps running but its outcome is discarded.

        Returns:
            True if the job moved to CANCELLED, False if it had already
            reached a terminal state.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self.store.get(job_id)
        if job.is_terminal:
            return False

        now = utc_now()
        cancelled = await self.store.update(
            job_id,
            {"status": JobStatus.CANCELLED, "finished_at": now, "updated_at": now},
            expected_status=CANCELLABLE_STATUSES,
        )
        if cancelled is None:
            # Lost the race to a terminal transition
            return False

        logger.info(
            "Job cancelled",
            extra={"job_id": job_id, "previous_status": job.status.value},
        )
        self._metrics.record_job_finished(cancelled.job_type, JobStatus.CANCELLED.value)
        return True

    # ------------------------------------------------------------------
    # Query interface
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str) -> JobStatusResponse:
        """
        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self.store.get(job_id)
        return JobStatusResponse.from_job(job)

    async def wait_for(
        self,
        job_id: str,
        timeout: float | None = None,
        poll_interval: float = 0.05,
    ) -> JobStatusResponse:
        """
        Wait until a job reaches a terminal state.

        Raises:
            JobNotFoundError: If the job does not exist (or was purged).
            TimeoutError: If the job is still running after `timeout`.
        """
        async with asyncio.timeout(timeout):
            while True:
                status = await self.get_status(job_id)
                if status.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
                    return status
                await asyncio.sleep(poll_interval)

    async def list_by_type(
        self,
        job_type: str,
        status: JobStatus | str = JobStatus.WAITING,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[JobSummary]:
        """
        Raises:
            JobValidationError: If status is unknown or limit is below 1.
        """
        try:
            job_status = JobStatus(status)
        except ValueError as e:
            raise JobValidationError(f"Unknown job status: {status}", {"status": status}) from e
        if limit < 1:
            raise JobValidationError(f"limit must be >= 1, got {limit}", {"limit": limit})
        return await self.monitor.list_by_type(job_type, job_status, limit)

    async def stats(self) -> QueueStats:
        return await self.monitor.stats()

    async def health(self) -> HealthReport:
        return await self.monitor.health()

    async def job_progress(self, job_id: str) -> JobProgressDetail:
        return await self.monitor.job_progress(job_id)

    async def failed_jobs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[FailedJobSummary]:
        return await self.monitor.failed_jobs(limit)

    async def pending_jobs(
        self,
        limit: int = DEFAULT_LIST_LIMIT,
        job_type: str | None = None,
    ) -> list[JobSummary]:
        return await self.monitor.pending_jobs(limit, job_type)

    async def active_jobs(
        self,
        limit: int = DEFAULT_LIST_LIMIT,
        job_type: str | None = None,
    ) -> list[JobSummary]:
        return await self.monitor.active_jobs(limit, job_type)

    def worker_stats(self) -> WorkerSnapshot:
        return self.monitor.worker_snapshot()


async def create_queue_engine(
    settings: Settings | None = None,
    registry: HandlerRegistry | None = None,
    metrics: MetricsCollector | None = None,
) -> JobQueueEngine:
    """
    Build an engine from settings.

    Uses the SQL store when a database URL is configured, otherwise the
    in-memory store.
    """
    settings = settings or get_settings()
    registry = registry or create_default_registry()

    store: JobStore
    if settings.database_url:
        from src.db.connection import create_engine
        from src.db.repository import SqlJobStore

        sql_store = SqlJobStore(create_engine(settings=settings))
        await sql_store.create_schema()
        store = sql_store
    else:
        store = MemoryJobStore()

    logger.info("Job store selected", extra={"store": type(store).__name__})
    return JobQueueEngine(store, registry, settings=settings, metrics=metrics)
