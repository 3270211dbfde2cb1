"""
Integration tests for worker job processing.

These run the full engine (dispatcher, worker pool, sweeper) against the
in-memory store with fast test handlers.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from src.config import Settings
from src.constants import MAX_BACKOFF_DELAY_MS, JobPriority, JobStatus
from src.engine import JobQueueEngine
from src.errors import JobNotFoundError
from src.observability.metrics import MetricsCollector
from src.store.memory import MemoryJobStore
from src.types.job import BackoffPolicy, Job, JobContext, JobResult
from src.worker.handlers import HandlerRegistry, handle_email_sending


async def _wait_for_status(
    engine: JobQueueEngine,
    job_id: str,
    status: JobStatus,
    timeout: float = 2.0,
) -> None:
    async with asyncio.timeout(timeout):
        while (await engine.get_status(job_id)).status != status:
            await asyncio.sleep(0.01)


class TestJobLifecycle:
    """End-to-end lifecycle tests."""

    @pytest.mark.asyncio
    async def test_job_completes(
        self, running_engine: JobQueueEngine, registry: HandlerRegistry
    ):
        """Test a typed job runs to completion and records its result."""
        registry.register("email-sending", handle_email_sending)

        job_id = await running_engine.enqueue(
            "email-sending", {"recipient": "a@x.com"}, priority=JobPriority.HIGH
        )
        initial = await running_engine.get_status(job_id)
        assert initial.status in (JobStatus.WAITING, JobStatus.ACTIVE)

        final = await running_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.COMPLETED
        assert final.attempts_made == 1
        assert final.progress == 100
        assert "a@x.com" in final.result["result"]
        assert final.finished_at is not None

    @pytest.mark.asyncio
    async def test_job_fails_after_max_attempts(
        self, running_engine: JobQueueEngine, fast_backoff: BackoffPolicy
    ):
        """Test an always-failing job is retried then marked failed."""
        job_id = await running_engine.enqueue(
            "always_fail", {}, max_attempts=3, backoff=fast_backoff
        )

        final = await running_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.FAILED
        assert final.attempts_made == 3
        assert final.failure_reason == "boom"

        failed = await running_engine.failed_jobs()
        assert [f.id for f in failed] == [job_id]

    @pytest.mark.asyncio
    async def test_job_retried_then_succeeds(
        self,
        running_engine: JobQueueEngine,
        store: MemoryJobStore,
        fast_backoff: BackoffPolicy,
    ):
        """Test a flaky job goes through DELAYED and completes on a later attempt."""
        job_id = await running_engine.enqueue(
            "flaky", {"succeed_on": 2}, max_attempts=3, backoff=fast_backoff
        )

        final = await running_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.COMPLETED
        assert final.attempts_made == 2
        assert final.result == {"attempt": 2}

        job = await store.get(job_id)
        assert job.last_error == "Attempt 1 failed"
        assert [t.to_status for t in job.transitions] == [
            JobStatus.WAITING,
            JobStatus.ACTIVE,
            JobStatus.DELAYED,
            JobStatus.WAITING,
            JobStatus.ACTIVE,
            JobStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_plain_value_result_completes(
        self, running_engine: JobQueueEngine, registry: HandlerRegistry
    ):
        """A handler returning a bare string still completes its job."""

        @registry.handler("plain")
        async def plain(context: JobContext) -> str:
            return "ok"

        job_id = await running_engine.enqueue("plain", {})

        final = await running_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.COMPLETED
        assert final.result == {"value": "ok"}

    @pytest.mark.asyncio
    async def test_longest_backoff_schedules_retry(self, running_engine: JobQueueEngine):
        """A failure under the maximum backoff is delayed, not left active."""
        job_id = await running_engine.enqueue(
            "always_fail",
            {},
            max_attempts=3,
            backoff={"kind": "exponential", "base_delay_ms": MAX_BACKOFF_DELAY_MS},
        )

        await _wait_for_status(running_engine, job_id, JobStatus.DELAYED)

        status = await running_engine.get_status(job_id)
        assert status.attempts_made == 1
        assert status.delay_until > status.created_at + timedelta(days=6)

    @pytest.mark.asyncio
    async def test_single_attempt_fails_without_retry(self, running_engine: JobQueueEngine):
        job_id = await running_engine.enqueue("always_fail", {}, max_attempts=1)

        final = await running_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.FAILED
        assert final.attempts_made == 1

    @pytest.mark.asyncio
    async def test_delayed_job_runs_after_delay(self, running_engine: JobQueueEngine):
        job_id = await running_engine.enqueue("echo", {"x": 1}, delay_ms=150)

        assert (await running_engine.get_status(job_id)).status == JobStatus.DELAYED

        final = await running_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.COMPLETED
        assert (final.processed_at - final.created_at).total_seconds() >= 0.15

    @pytest.mark.asyncio
    async def test_generic_job_uses_default_handler(self, running_engine: JobQueueEngine):
        job_id = await running_engine.enqueue_generic({"task": "cleanup"})

        final = await running_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.COMPLETED
        assert final.result["message"] == "Processed with generic handler: generic"
        assert final.result["data"] == {"task": "cleanup"}


class TestPriorityDispatch:
    """Tests for priority ordering across a busy pool."""

    @pytest_asyncio.fixture
    async def single_slot_engine(
        self,
        store: MemoryJobStore,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        engine = JobQueueEngine(
            store, registry, settings=test_settings, metrics=metrics, concurrency=1
        )
        yield engine
        await engine.stop()

    @pytest.mark.asyncio
    async def test_critical_claimed_before_low(self, single_slot_engine: JobQueueEngine):
        """Jobs queued while no worker is free are claimed by priority."""
        low = await single_slot_engine.enqueue("echo", {}, priority="low")
        critical = await single_slot_engine.enqueue("echo", {}, priority="critical")

        await single_slot_engine.start()
        low_status = await single_slot_engine.wait_for(low, timeout=5.0)
        critical_status = await single_slot_engine.wait_for(critical, timeout=5.0)

        assert critical_status.processed_at <= low_status.processed_at


class TestCancellation:
    """Tests for cancelling in-flight jobs."""

    @pytest.mark.asyncio
    async def test_cancel_active_discards_outcome(
        self, running_engine: JobQueueEngine, store: MemoryJobStore
    ):
        """The handler of a cancelled active job finishes, but its result is dropped."""
        job_id = await running_engine.enqueue("slow", {"seconds": 0.3})
        await _wait_for_status(running_engine, job_id, JobStatus.ACTIVE)

        assert await running_engine.cancel(job_id) is True
        await asyncio.sleep(0.5)

        job = await store.get(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.result is None
        assert job.transitions[-1].to_status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_job_never_runs(self, engine: JobQueueEngine):
        job_id = await engine.enqueue("echo", {})
        await engine.cancel(job_id)

        await engine.start()
        await asyncio.sleep(0.2)

        status = await engine.get_status(job_id)
        assert status.status == JobStatus.CANCELLED
        assert status.attempts_made == 0


class TestWorkerPool:
    """Tests for worker slot behavior."""

    @pytest.mark.asyncio
    async def test_worker_stats_while_busy(self, running_engine: JobQueueEngine):
        job_id = await running_engine.enqueue("slow", {"seconds": 0.3})
        await _wait_for_status(running_engine, job_id, JobStatus.ACTIVE)
        await asyncio.sleep(0.05)

        snapshot = running_engine.worker_stats()
        assert snapshot.count == 2
        assert snapshot.active == 1
        assert any(slot.job_id == job_id for slot in snapshot.slots)

        active = await running_engine.active_jobs()
        assert [j.id for j in active] == [job_id]

    @pytest.mark.asyncio
    async def test_progress_visible_during_execution(self, running_engine: JobQueueEngine):
        job_id = await running_engine.enqueue("slow", {"seconds": 0.3})
        await _wait_for_status(running_engine, job_id, JobStatus.ACTIVE)
        await asyncio.sleep(0.05)

        detail = await running_engine.job_progress(job_id)
        assert detail.progress == 10
        assert detail.processing_time_ms is not None

        final = await running_engine.wait_for(job_id, timeout=5.0)
        assert final.progress == 100

    @pytest.mark.asyncio
    async def test_stop_lets_active_job_finish(self, engine: JobQueueEngine):
        """Graceful shutdown waits for in-flight attempts."""
        await engine.start()
        job_id = await engine.enqueue("slow", {"seconds": 0.2})
        await _wait_for_status(engine, job_id, JobStatus.ACTIVE)

        await engine.stop()

        assert (await engine.get_status(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_worker_error_fails_attempt(
        self, engine: JobQueueEngine, registry: HandlerRegistry, monkeypatch
    ):
        """An error outside the handler still moves the claimed job out of ACTIVE."""

        async def broken_execute(context: JobContext) -> JobResult:
            raise RuntimeError("registry exploded")

        monkeypatch.setattr(registry, "execute", broken_execute)
        await engine.start()

        job_id = await engine.enqueue("echo", {}, max_attempts=1)
        final = await engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.FAILED
        assert "registry exploded" in final.failure_reason
        assert engine.worker_stats().active == 0

    @pytest.mark.asyncio
    async def test_many_jobs_each_run_once(
        self, running_engine: JobQueueEngine, store: MemoryJobStore
    ):
        job_ids = [await running_engine.enqueue("echo", {"n": i}) for i in range(20)]

        for job_id in job_ids:
            final = await running_engine.wait_for(job_id, timeout=5.0)
            assert final.status == JobStatus.COMPLETED
            assert final.attempts_made == 1

        for job_id in job_ids:
            job = await store.get(job_id)
            assert sum(1 for t in job.transitions if t.to_status == JobStatus.ACTIVE) == 1


class TestRetention:
    """Tests for the retention sweep."""

    @pytest_asyncio.fixture
    async def purging_engine(
        self,
        store: MemoryJobStore,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        settings = test_settings.model_copy(
            update={"completed_retention_seconds": 0.0, "failed_retention_seconds": 0.0}
        )
        engine = JobQueueEngine(store, registry, settings=settings, metrics=metrics)
        await engine.start()
        yield engine
        await engine.stop()

    @pytest.mark.asyncio
    async def test_completed_job_purged(self, purging_engine: JobQueueEngine):
        job_id = await purging_engine.enqueue("echo", {})

        with pytest.raises(JobNotFoundError):
            async with asyncio.timeout(3.0):
                while True:
                    await purging_engine.get_status(job_id)
                    await asyncio.sleep(0.02)

    @pytest.mark.asyncio
    async def test_completed_job_kept_when_not_flagged(self, purging_engine: JobQueueEngine):
        job_id = await purging_engine.enqueue("echo", {}, remove_on_complete=False)

        await purging_engine.wait_for(job_id, timeout=5.0)
        await asyncio.sleep(0.2)

        assert (await purging_engine.get_status(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_job_kept_by_default(self, purging_engine: JobQueueEngine):
        job_id = await purging_engine.enqueue("always_fail", {}, max_attempts=1)

        await purging_engine.wait_for(job_id, timeout=5.0)
        await asyncio.sleep(0.2)

        assert (await purging_engine.get_status(job_id)).status == JobStatus.FAILED


class TestStaleRecovery:
    """Tests for heartbeats and recovery of abandoned jobs."""

    @pytest_asyncio.fixture
    async def recovering_engine(
        self,
        store: MemoryJobStore,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        settings = test_settings.model_copy(
            update={"stale_job_timeout_seconds": 0.3, "worker_heartbeat_interval_seconds": 0.05}
        )
        engine = JobQueueEngine(store, registry, settings=settings, metrics=metrics)
        await engine.start()
        yield engine
        await engine.stop()

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_long_job_alive(self, recovering_engine: JobQueueEngine):
        """A job running past the stale timeout is not recovered while its worker lives."""
        job_id = await recovering_engine.enqueue("slow", {"seconds": 0.8})

        final = await recovering_engine.wait_for(job_id, timeout=5.0)

        assert final.status == JobStatus.COMPLETED
        assert final.attempts_made == 1

    @pytest.mark.asyncio
    async def test_abandoned_job_retried(
        self,
        recovering_engine: JobQueueEngine,
        store: MemoryJobStore,
        fast_backoff: BackoffPolicy,
    ):
        """An ACTIVE job left behind by a dead worker gets another attempt."""
        job = await store.create(
            Job(
                job_type="echo",
                status=JobStatus.ACTIVE,
                attempts_made=1,
                max_attempts=2,
                worker_id="crashed-worker",
                backoff=fast_backoff,
            )
        )

        final = await recovering_engine.wait_for(job.id, timeout=5.0)

        assert final.status == JobStatus.COMPLETED
        assert final.attempts_made == 2
        assert (await store.get(job.id)).last_error == "Worker lost: no heartbeat"
