"""
Pytest configuration and shared fixtures.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from src.config import Settings
from src.engine import JobQueueEngine
from src.errors import HandlerFailure
from src.observability.metrics import MetricsCollector
from src.store.memory import MemoryJobStore
from src.types.job import BackoffPolicy, JobContext, JobResult
from src.worker.handlers import HandlerRegistry

# SQL store tests run only against an explicitly provided database
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture(scope="session")
def database_url() -> str:
    """Get the test database URL, skipping SQL tests when none is configured."""
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL not set")
    return TEST_DATABASE_URL


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url=None,
        log_level="DEBUG",
        log_format="console",
        worker_concurrency=2,
        worker_poll_interval_seconds=0.05,
        sweeper_interval_seconds=0.05,
        completed_retention_seconds=60.0,
        failed_retention_seconds=86400.0,
    )


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    """Retry delays short enough for tests to wait them out."""
    return BackoffPolicy(kind="fixed", base_delay_ms=10)


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on an isolated registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[MemoryJobStore]:
    """Create an in-memory job store."""
    store = MemoryJobStore()
    yield store
    await store.close()


@pytest.fixture
def registry() -> HandlerRegistry:
    """
    Registry with fast test handlers.

    - echo: returns its payload
    - flaky: fails until payload["succeed_on"] attempts were made
    - always_fail: fails every attempt
    - slow: sleeps payload["seconds"], reporting progress
    """
    registry = HandlerRegistry()

    @registry.handler("echo")
    async def echo(context: JobContext) -> dict[str, Any]:
        return {"echo": context.payload}

    @registry.handler("flaky")
    async def flaky(context: JobContext) -> JobResult:
        if context.attempt < context.payload.get("succeed_on", 1):
            raise HandlerFailure(f"Attempt {context.attempt} failed")
        return JobResult(success=True, output={"attempt": context.attempt})

    @registry.handler("always_fail")
    async def always_fail(context: JobContext) -> JobResult:
        return JobResult(success=False, error="boom")

    @registry.handler("slow")
    async def slow(context: JobContext) -> dict[str, Any]:
        await context.progress.report(10)
        await asyncio.sleep(context.payload.get("seconds", 0.2))
        await context.progress.report(90)
        return {"slept": True}

    return registry


@pytest_asyncio.fixture
async def engine(
    store: MemoryJobStore,
    registry: HandlerRegistry,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> AsyncGenerator[JobQueueEngine]:
    """Engine wired to the memory store; not started."""
    engine = JobQueueEngine(store, registry, settings=test_settings, metrics=metrics)
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def running_engine(engine: JobQueueEngine) -> AsyncGenerator[JobQueueEngine]:
    """Engine with its worker pool and sweeper running."""
    await engine.start()
    yield engine
    await engine.stop()
