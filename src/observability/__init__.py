"""
Observability module.

Structured logs tagged with the executing job, Prometheus metrics served
from the worker process, and OpenTelemetry spans around enqueue and
execution.
"""

from src.observability.logging import get_logger, job_log_context, setup_logging
from src.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from src.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "get_logger",
    "job_log_context",
    "MetricsCollector",
    "setup_metrics",
    "get_metrics",
    "setup_tracing",
    "get_tracer",
]
