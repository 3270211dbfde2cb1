"""
Unit tests for the engine's producer interface.
"""

import pytest

from src.config import Settings
from src.constants import PRIORITY_WEIGHTS, BackoffKind, JobPriority, JobStatus
from src.engine import JobQueueEngine, create_queue_engine
from src.errors import JobNotFoundError, JobValidationError
from src.observability.metrics import MetricsCollector
from src.store.memory import MemoryJobStore


class TestEnqueue:
    """Tests for enqueue (engine not started)."""

    @pytest.mark.asyncio
    async def test_enqueue_defaults(self, engine: JobQueueEngine, store: MemoryJobStore):
        job_id = await engine.enqueue("echo", {"message": "hi"})

        job = await store.get(job_id)
        assert job.status == JobStatus.WAITING
        assert job.priority == PRIORITY_WEIGHTS[JobPriority.NORMAL]
        assert job.max_attempts == 3
        assert job.attempts_made == 0
        assert job.backoff.kind == BackoffKind.EXPONENTIAL
        assert job.backoff.base_delay_ms == 1000
        assert job.remove_on_complete is True
        assert job.remove_on_fail is False

    @pytest.mark.asyncio
    async def test_enqueue_ids_unique(self, engine: JobQueueEngine):
        ids = {await engine.enqueue("echo", {}) for _ in range(20)}

        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_enqueue_priority_weight(self, engine: JobQueueEngine, store: MemoryJobStore):
        job_id = await engine.enqueue("echo", {}, priority="critical")

        assert (await store.get(job_id)).priority == 20

    @pytest.mark.asyncio
    async def test_enqueue_with_delay(self, engine: JobQueueEngine, store: MemoryJobStore):
        """A positive delay starts the job in DELAYED."""
        job_id = await engine.enqueue("echo", {}, delay_ms=60_000)

        job = await store.get(job_id)
        assert job.status == JobStatus.DELAYED
        assert job.delay_until is not None
        assert (job.delay_until - job.created_at).total_seconds() == pytest.approx(60, abs=1)

    @pytest.mark.asyncio
    async def test_enqueue_custom_backoff(self, engine: JobQueueEngine, store: MemoryJobStore):
        job_id = await engine.enqueue(
            "echo", {}, backoff={"kind": "fixed", "base_delay_ms": 250}
        )

        backoff = (await store.get(job_id)).backoff
        assert backoff.kind == BackoffKind.FIXED
        assert backoff.base_delay_ms == 250

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"job_type": ""},
            {"priority": "urgent"},
            {"max_attempts": 0},
            {"delay_ms": -1},
            {"backoff": {"kind": "linear", "base_delay_ms": 10}},
            {"backoff": {"kind": "fixed", "base_delay_ms": -5}},
            {"backoff": {"kind": "fixed", "base_delay_ms": 10**15}},
            {"delay_ms": 10**15},
        ],
    )
    async def test_enqueue_validation(
        self, engine: JobQueueEngine, store: MemoryJobStore, kwargs
    ):
        """Invalid options are rejected and no job is created."""
        job_type = kwargs.pop("job_type", "echo")

        with pytest.raises(JobValidationError) as exc_info:
            await engine.enqueue(job_type, {}, **kwargs)

        assert exc_info.value.details["errors"]
        assert await store.counts() == {}

    @pytest.mark.asyncio
    async def test_enqueue_records_metric(
        self, engine: JobQueueEngine, metrics: MetricsCollector
    ):
        await engine.enqueue("echo", {}, priority="high")

        value = metrics._registry.get_sample_value(
            "jobs_enqueued_total", {"job_type": "echo", "priority": "15"}
        )
        assert value == 1.0


class TestEnqueueGeneric:
    """Tests for the generic enqueue path."""

    @pytest.mark.asyncio
    async def test_generic_defaults(self, engine: JobQueueEngine, store: MemoryJobStore):
        job_id = await engine.enqueue_generic({"task": "x"})

        job = await store.get(job_id)
        assert job.job_type == "generic"
        assert job.priority == 1
        assert job.max_attempts == 3
        assert job.backoff.kind == BackoffKind.FIXED
        assert job.backoff.base_delay_ms == 5000

    @pytest.mark.asyncio
    async def test_generic_options(self, engine: JobQueueEngine, store: MemoryJobStore):
        job_id = await engine.enqueue_generic({}, priority=7, attempts=5)

        job = await store.get(job_id)
        assert job.priority == 7
        assert job.max_attempts == 5

    @pytest.mark.asyncio
    async def test_generic_validation(self, engine: JobQueueEngine):
        with pytest.raises(JobValidationError):
            await engine.enqueue_generic({}, attempts=0)


class TestCancel:
    """Tests for cancel."""

    @pytest.mark.asyncio
    async def test_cancel_waiting(self, engine: JobQueueEngine):
        job_id = await engine.enqueue("echo", {})

        assert await engine.cancel(job_id) is True

        status = await engine.get_status(job_id)
        assert status.status == JobStatus.CANCELLED
        assert status.finished_at is not None
        assert await engine.list_by_type("echo", "active") == []

    @pytest.mark.asyncio
    async def test_cancel_delayed(self, engine: JobQueueEngine):
        job_id = await engine.enqueue("echo", {}, delay_ms=60_000)

        assert await engine.cancel(job_id) is True
        assert (await engine.get_status(job_id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, engine: JobQueueEngine):
        """Cancelling an already terminal job reports False and changes nothing."""
        job_id = await engine.enqueue("echo", {})
        await engine.cancel(job_id)

        assert await engine.cancel(job_id) is False
        assert (await engine.get_status(job_id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, engine: JobQueueEngine):
        with pytest.raises(JobNotFoundError):
            await engine.cancel("missing")


class TestQueries:
    """Tests for status and listing queries."""

    @pytest.mark.asyncio
    async def test_get_status_unknown(self, engine: JobQueueEngine):
        with pytest.raises(JobNotFoundError) as exc_info:
            await engine.get_status("missing")

        assert "not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_list_by_type(self, engine: JobQueueEngine):
        first = await engine.enqueue("echo", {"n": 1})
        second = await engine.enqueue("echo", {"n": 2})
        await engine.enqueue("other", {})

        listed = await engine.list_by_type("echo", "waiting", 10)

        assert [j.id for j in listed] == [first, second]

    @pytest.mark.asyncio
    async def test_list_by_type_limit(self, engine: JobQueueEngine):
        for _ in range(5):
            await engine.enqueue("echo", {})

        assert len(await engine.list_by_type("echo", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_list_by_type_rejects_unknown_status(self, engine: JobQueueEngine):
        with pytest.raises(JobValidationError):
            await engine.list_by_type("echo", "running")

    @pytest.mark.asyncio
    async def test_list_by_type_rejects_bad_limit(self, engine: JobQueueEngine):
        with pytest.raises(JobValidationError):
            await engine.list_by_type("echo", "waiting", 0)

    def test_worker_stats_before_start(self, engine: JobQueueEngine):
        snapshot = engine.worker_stats()

        assert snapshot.count == 0
        assert snapshot.active == 0


class TestCreateQueueEngine:
    """Tests for building the engine from settings."""

    @pytest.mark.asyncio
    async def test_memory_store_without_database(self, metrics: MetricsCollector):
        engine = await create_queue_engine(Settings(database_url=None), metrics=metrics)

        try:
            assert isinstance(engine.store, MemoryJobStore)
            assert "email-sending" in engine.registry.list_types()
        finally:
            await engine.close()
