"""
Structured logging setup using structlog.

Engine modules log through `logging.getLogger(__name__)` with `extra={...}`;
those records are rendered by the same structlog processor chain, enriched
with the service name, the current trace ids and the job being executed.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO, Any

import structlog
from opentelemetry import trace

from src.config import Settings, get_settings

# Library loggers that are too chatty at INFO
_NOISY_LOGGERS = ("sqlalchemy.engine", "asyncio")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the current OpenTelemetry trace and span ids, if any."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_service_name(service_name: str) -> structlog.types.Processor:
    """Build a processor stamping every record with the service name."""

    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def setup_logging(settings: Settings | None = None, stream: IO[str] | None = None) -> None:
    """
    Configure structured logging for the engine.

    Args:
        settings: Log level, format (json or console) and service name.
        stream: Output stream. Defaults to stdout.
    """
    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        add_service_name(settings.otel_service_name),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream is None)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # SQL echo is controlled by the engine, not the log level
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger (usually for `__name__`)."""
    return structlog.get_logger(name)


@contextmanager
def job_log_context(job_id: str, job_type: str, worker_id: str, attempt: int) -> Iterator[None]:
    """
    Tag every record logged inside the block with the executing job.

    Scoped to the current task's context; previous bindings are restored
    on exit.
    """
    with structlog.contextvars.bound_contextvars(
        job_id=job_id,
        job_type=job_type,
        worker_id=worker_id,
        attempt=attempt,
    ):
        yield
