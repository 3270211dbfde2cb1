"""
Unit tests for logging and metrics setup.
"""

import io
import json
import logging
from typing import Any

import pytest

from src.config import Settings
from src.observability import metrics as metrics_module
from src.observability.logging import job_log_context, setup_logging
from src.observability.metrics import MetricsCollector


@pytest.fixture
def log_stream():
    """JSON logging into a buffer; restores the root logger afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    stream = io.StringIO()
    setup_logging(
        Settings(log_format="json", log_level="INFO", otel_service_name="queue-under-test"),
        stream=stream,
    )
    yield stream
    root.handlers = handlers
    root.setLevel(level)


def _records(stream: io.StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestLogging:
    """Tests for structured logging."""

    def test_records_rendered_as_json(self, log_stream: io.StringIO):
        logging.getLogger("src.engine").info("Job enqueued", extra={"job_type": "echo"})

        [record] = _records(log_stream)
        assert record["event"] == "Job enqueued"
        assert record["job_type"] == "echo"
        assert record["level"] == "info"
        assert record["service"] == "queue-under-test"

    def test_job_log_context_tags_records(self, log_stream: io.StringIO):
        """Records inside the block carry the job; records after it do not."""
        logger = logging.getLogger("src.worker.pool")

        with job_log_context("job-1", "echo", "worker-1", 2):
            logger.info("Executing job")
        logger.info("Idle")

        inside, after = _records(log_stream)
        assert inside["job_id"] == "job-1"
        assert inside["worker_id"] == "worker-1"
        assert inside["attempt"] == 2
        assert "job_id" not in after


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_serve_exposes_own_registry(self, metrics: MetricsCollector, monkeypatch):
        calls = []

        def fake_start_http_server(port: int, addr: str = "", registry=None):
            calls.append((port, addr, registry))

        monkeypatch.setattr(metrics_module, "start_http_server", fake_start_http_server)

        metrics.serve(9200)

        assert calls == [(9200, "0.0.0.0", metrics._registry)]

    def test_records_into_registry(self, metrics: MetricsCollector):
        metrics.record_job_finished("echo", "completed")
        metrics.set_workers_busy(3)

        registry = metrics._registry
        assert registry.get_sample_value(
            "jobs_finished_total", {"job_type": "echo", "status": "completed"}
        ) == 1.0
        assert registry.get_sample_value("workers_busy") == 3.0
