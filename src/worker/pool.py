"""
Worker pool for executing jobs.

Each slot pulls a job from the dispatcher, runs its handler, and drives the
job's state machine with the outcome: completed, retried after a backoff
delay, or failed once attempts are exhausted.
"""

import asyncio
import logging
import time

from src.constants import SPAN_EXECUTE_JOB, JobStatus
from src.errors import StoreUnavailableError
from src.observability.logging import job_log_context
from src.observability.metrics import MetricsCollector, get_metrics
from src.observability.tracing import get_tracer
from src.store.base import JobStore
from src.types.api import WorkerSlotInfo, WorkerSnapshot
from src.types.job import Job, JobContext, JobResult, utc_now
from src.worker.backoff import failure_values
from src.worker.dispatcher import PriorityDispatcher
from src.worker.handlers import HandlerRegistry
from src.worker.progress import ProgressReporter

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Fixed-size pool of concurrent worker slots.

    Features:
    - Exactly-once claims through the dispatcher
    - Handler failures isolated to their own job
    - Outcomes of cancelled attempts discarded
    - Heartbeats on in-flight jobs so the sweeper can tell them from lost ones
    - Graceful shutdown that lets in-flight attempts finish
    """

    def __init__(
        self,
        dispatcher: PriorityDispatcher,
        store: JobStore,
        registry: HandlerRegistry,
        concurrency: int = 4,
        poll_interval: float = 1.0,
        metrics: MetricsCollector | None = None,
        name: str = "worker",
        heartbeat_interval: float = 10.0,
    ):
        """
        Initialize the pool.

        Args:
            dispatcher: Source of claimed jobs.
            store: The job store.
            registry: Handler lookup by job type.
            concurrency: Number of slots.
            poll_interval: Seconds a slot backs off after an error.
            metrics: Metrics collector.
            name: Prefix for slot identifiers.
            heartbeat_interval: Seconds between `updated_at` refreshes of
                in-flight jobs.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        self._dispatcher = dispatcher
        self._store = store
        self._registry = registry
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self._metrics = metrics or get_metrics()

        self._slot_ids = [f"{name}-{i + 1}" for i in range(concurrency)]
        # worker_id -> claimed job
        self._current_jobs: dict[str, Job] = {}
        self._tasks: list[asyncio.Task] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def size(self) -> int:
        """Number of slots currently running."""
        return len(self._tasks) if self._running else 0

    @property
    def busy_count(self) -> int:
        """Number of slots executing a job."""
        return len(self._current_jobs)

    def snapshot(self) -> WorkerSnapshot:
        """Current slot states."""
        slot_ids = self._slot_ids if self._running else []
        slots = []
        for slot_id in slot_ids:
            job = self._current_jobs.get(slot_id)
            slots.append(
                WorkerSlotInfo(worker_id=slot_id, busy=job is not None, job_id=job.id if job else None)
            )
        return WorkerSnapshot(
            count=len(slot_ids),
            active=sum(1 for slot in slots if slot.busy),
            slots=slots,
        )

    async def start(self) -> None:
        """Start all slots and the heartbeat."""
        if self._running:
            return

        logger.info("Worker pool starting", extra={"concurrency": self.concurrency})
        self._running = True
        await self._dispatcher.reopen()
        self._tasks = [
            asyncio.create_task(self._slot_loop(slot_id), name=slot_id)
            for slot_id in self._slot_ids
        ]
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="worker-heartbeat")

    async def stop(self) -> None:
        """Stop all slots gracefully, letting in-flight attempts finish."""
        if not self._running:
            return

        logger.info("Worker pool stopping", extra={"busy": self.busy_count})
        self._running = False
        await self._dispatcher.close()

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        # Heartbeats run until the last in-flight attempt has finished
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        logger.info("Worker pool stopped")

    async def _slot_loop(self, worker_id: str) -> None:
        while self._running:
            try:
                job = await self._dispatcher.next_ready(worker_id, timeout=self.poll_interval)
                if job is None:
                    continue
                await self.process(job, worker_id)

            except StoreUnavailableError as e:
                logger.error(
                    "Job store unavailable, backing off",
                    extra={"worker_id": worker_id, "error": str(e)},
                )
                await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": worker_id},
                )
                await asyncio.sleep(self.poll_interval)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically refresh `updated_at` on in-flight jobs.

        The sweeper treats ACTIVE jobs without a recent update as abandoned
        by a crashed worker.
        """
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                for job in list(self._current_jobs.values()):
                    await self.heartbeat(job)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")

    async def heartbeat(self, job: Job) -> bool:
        """
        Mark one in-flight attempt as still alive.

        Returns:
            True if the job is still ACTIVE on this attempt.
        """
        refreshed = await self._store.update(
            job.id,
            {"updated_at": utc_now()},
            expected_status={JobStatus.ACTIVE},
            expected_attempt=job.attempts_made,
        )
        if refreshed is not None:
            logger.debug("Heartbeat", extra={"job_id": job.id})
        return refreshed is not None

    async def process(self, job: Job, worker_id: str) -> Job | None:
        """
        Execute one attempt of a claimed job and record its outcome.

        Args:
            job: The job, already claimed (ACTIVE) for this worker.
            worker_id: The executing slot.

        Returns:
            The job after its outcome was recorded, or None if the outcome
            was discarded because the job was cancelled meanwhile.
        """
        attempt = job.attempts_made
        start_time = time.monotonic()

        self._current_jobs[worker_id] = job
        self._metrics.set_workers_busy(self.busy_count)

        with job_log_context(job.id, job.job_type, worker_id, attempt):
            try:
                return await self._execute(job, worker_id, attempt, start_time)

            except StoreUnavailableError:
                raise

            except Exception as e:
                logger.exception(
                    "Exception executing job",
                    extra={"job_id": job.id, "error": str(e)},
                )
                # A claimed job must not stay ACTIVE
                try:
                    return await self._fail(
                        job,
                        attempt,
                        JobResult(success=False, error=f"Worker exception: {e}"),
                        time.monotonic() - start_time,
                    )
                except Exception:
                    logger.exception("Failed to mark job as failed", extra={"job_id": job.id})
                    return None

            finally:
                self._current_jobs.pop(worker_id, None)
                self._metrics.set_workers_busy(self.busy_count)

    async def _execute(self, job: Job, worker_id: str, attempt: int, start_time: float) -> Job | None:
        context = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            attempt=attempt,
            max_attempts=job.max_attempts,
            payload=job.payload,
            worker_id=worker_id,
            progress=ProgressReporter(self._store, job.id, attempt),
        )

        logger.info(
            "Executing job",
            extra={"job_id": job.id, "job_type": job.job_type, "attempt": attempt},
        )

        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", job.id)
            span.set_attribute("job_type", job.job_type)
            span.set_attribute("attempt", attempt)

            result = await self._registry.execute(context)
            span.set_attribute("success", result.success)

        duration = time.monotonic() - start_time
        result.duration_ms = duration * 1000

        if result.success:
            return await self._complete(job, attempt, result, duration)
        return await self._fail(job, attempt, result, duration)

    async def _complete(self, job: Job, attempt: int, result: JobResult, duration: float) -> Job | None:
        now = utc_now()
        completed = await self._store.update(
            job.id,
            {
                "status": JobStatus.COMPLETED,
                "result": result.output,
                "progress": 100,
                "finished_at": now,
                "worker_id": None,
                "updated_at": now,
            },
            expected_status={JobStatus.ACTIVE},
            expected_attempt=attempt,
        )
        if completed is None:
            self._log_discarded(job, "completed")
            return None

        logger.info(
            "Job completed successfully",
            extra={"job_id": job.id, "duration": f"{duration:.2f}s"},
        )
        self._metrics.record_attempt(job.job_type, JobStatus.COMPLETED.value, duration)
        self._metrics.record_job_finished(job.job_type, JobStatus.COMPLETED.value)
        return completed

    async def _fail(self, job: Job, attempt: int, result: JobResult, duration: float) -> Job | None:
        error = result.error or "Unknown error"
        values = failure_values(job, attempt, error, utc_now())

        updated = await self._store.update(
            job.id,
            values,
            expected_status={JobStatus.ACTIVE},
            expected_attempt=attempt,
        )
        if updated is None:
            self._log_discarded(job, "retry" if values["status"] == JobStatus.DELAYED else "failure")
            return None

        if updated.status == JobStatus.DELAYED:
            logger.info(
                "Job queued for retry",
                extra={
                    "job_id": job.id,
                    "attempt": attempt,
                    "error": error,
                    "delay_until": values["delay_until"].isoformat(),
                },
            )
            self._metrics.record_attempt(job.job_type, JobStatus.DELAYED.value, duration)
            self._metrics.record_retry(job.job_type)
            await self._dispatcher.notify()
            return updated

        logger.warning(
            f"Job failed after {attempt} attempts",
            extra={"job_id": job.id, "error": error},
        )
        self._metrics.record_attempt(job.job_type, JobStatus.FAILED.value, duration)
        self._metrics.record_job_finished(job.job_type, JobStatus.FAILED.value)
        return updated

    @staticmethod
    def _log_discarded(job: Job, outcome: str) -> None:
        logger.info(
            "Discarding outcome of cancelled attempt",
            extra={"job_id": job.id, "outcome": outcome},
        )
