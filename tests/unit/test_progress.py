"""
Unit tests for progress reporting.
"""

import asyncio
from typing import Any

import pytest

from src.constants import JobStatus
from src.errors import JobValidationError
from src.store.memory import MemoryJobStore
from src.types.job import Job
from src.worker.progress import ProgressReporter


class UnevenLatencyStore(MemoryJobStore):
    """Memory store whose writes of low progress values are slow."""

    async def update(self, job_id: str, values: dict[str, Any], **kwargs) -> Job | None:
        if values.get("progress", 100) < 50:
            await asyncio.sleep(0.05)
        return await super().update(job_id, values, **kwargs)


class TestProgressReporter:
    """Tests for ProgressReporter."""

    @pytest.fixture
    def active_job(self) -> Job:
        return Job(job_type="echo", status=JobStatus.ACTIVE, attempts_made=1)

    @pytest.mark.asyncio
    async def test_report_records_progress(self, store: MemoryJobStore, active_job: Job):
        job = await store.create(active_job)
        reporter = ProgressReporter(store, job.id, attempt=1)

        assert await reporter.report(40) is True

        assert (await store.get(job.id)).progress == 40
        assert reporter.last == 40

    @pytest.mark.asyncio
    async def test_callable_form(self, store: MemoryJobStore, active_job: Job):
        job = await store.create(active_job)
        reporter = ProgressReporter(store, job.id, attempt=1)

        await reporter(25)

        assert (await store.get(job.id)).progress == 25

    @pytest.mark.asyncio
    async def test_decreasing_progress_ignored(self, store: MemoryJobStore, active_job: Job):
        """Progress never moves backwards within an attempt."""
        job = await store.create(active_job)
        reporter = ProgressReporter(store, job.id, attempt=1)

        await reporter.report(60)
        assert await reporter.report(30) is False

        assert (await store.get(job.id)).progress == 60

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [-1, 101, 50.5, "50", True])
    async def test_invalid_values_rejected(
        self, store: MemoryJobStore, active_job: Job, value
    ):
        job = await store.create(active_job)
        reporter = ProgressReporter(store, job.id, attempt=1)

        with pytest.raises(JobValidationError):
            await reporter.report(value)

        assert (await store.get(job.id)).progress == 0

    @pytest.mark.asyncio
    async def test_no_write_after_cancellation(self, store: MemoryJobStore, active_job: Job):
        """A cancelled attempt can no longer publish progress."""
        job = await store.create(active_job)
        reporter = ProgressReporter(store, job.id, attempt=1)
        await store.update(
            job.id, {"status": JobStatus.CANCELLED}, expected_status={JobStatus.ACTIVE}
        )

        assert await reporter.report(80) is False
        assert (await store.get(job.id)).progress == 0

    @pytest.mark.asyncio
    async def test_stale_attempt_ignored(self, store: MemoryJobStore):
        """A reporter from an earlier attempt cannot write into a later one."""
        job = await store.create(Job(job_type="echo", status=JobStatus.ACTIVE, attempts_made=2))
        reporter = ProgressReporter(store, job.id, attempt=1)

        assert await reporter.report(50) is False

    @pytest.mark.asyncio
    async def test_overlapping_reports_never_regress(self, active_job: Job):
        """Concurrent reports land in call order, so progress ends at the highest value."""
        store = UnevenLatencyStore()
        job = await store.create(active_job)
        reporter = ProgressReporter(store, job.id, attempt=1)

        await asyncio.gather(reporter.report(40), reporter.report(60))

        assert (await store.get(job.id)).progress == 60
        assert reporter.last == 60
        await store.close()
