"""
Worker process entry point.

Builds the engine from settings, runs its worker pool and sweeper, and
shuts down gracefully on SIGTERM/SIGINT, letting in-flight attempts finish.
"""

import asyncio
import signal

from src.config import get_settings
from src.engine import create_queue_engine
from src.observability.logging import get_logger, setup_logging
from src.observability.metrics import setup_metrics
from src.observability.tracing import setup_tracing

logger = get_logger(__name__)


async def run_async() -> None:
    """Run the engine until a shutdown signal arrives."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    metrics = setup_metrics()
    if settings.metrics_port:
        metrics.serve(settings.metrics_port)
        logger.info("Metrics endpoint listening", port=settings.metrics_port)

    engine = await create_queue_engine(settings, metrics=metrics)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    logger.info(
        "Worker process starting",
        concurrency=settings.worker_concurrency,
        job_types=engine.registry.list_types(),
    )

    try:
        await engine.start()
        await shutdown.wait()
    finally:
        await engine.close()
        logger.info("Worker process stopped")


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
