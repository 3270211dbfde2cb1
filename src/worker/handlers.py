"""
Job handler registry and built-in handler implementations.

Handlers must be idempotent - a failed attempt is retried with the same
payload, and a cancelled attempt may still run to completion.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from src.constants import (
    JOB_TYPE_DATA_PROCESSING,
    JOB_TYPE_EMAIL_SENDING,
    JOB_TYPE_IMAGE_PROCESSING,
    JOB_TYPE_REPORT_GENERATION,
)
from src.errors import HandlerFailure
from src.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions.
# A handler may return a JobResult, an output dict, None, or any other
# value (stored as {"value": ...}).
JobHandler = Callable[[JobContext], Awaitable[Any]]


class HandlerRegistry:
    """
    Mapping from job type to the handler that performs the work.

    Unknown types resolve to the default handler.
    """

    def __init__(self, default_handler: JobHandler | None = None):
        """
        Initialize the registry.

        Args:
            default_handler: Fallback for unregistered types. Defaults to
                the generic handler.
        """
        self._handlers: dict[str, JobHandler] = {}
        self._default = default_handler or handle_generic

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register (or replace) the handler for a job type."""
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator form of `register`.

        Example:
            @registry.handler("email-sending")
            async def send_email(context: JobContext) -> JobResult:
                ...
        """
        def decorator(func: JobHandler) -> JobHandler:
            self.register(job_type, func)
            return func
        return decorator

    def resolve(self, job_type: str) -> JobHandler:
        """Get the handler for a job type, falling back to the default."""
        return self._handlers.get(job_type, self._default)

    def is_registered(self, job_type: str) -> bool:
        return job_type in self._handlers

    def list_types(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers.keys())

    async def execute(self, context: JobContext) -> JobResult:
        """
        Run the handler for a job and normalize its outcome.

        Handler exceptions never escape: they become failed results.

        Args:
            context: The job context.

        Returns:
            JobResult from the handler.
        """
        handler = self.resolve(context.job_type)
        if not self.is_registered(context.job_type):
            logger.info(
                "No specific handler, using default",
                extra={"job_id": context.job_id, "job_type": context.job_type},
            )

        try:
            outcome = await handler(context)
        except HandlerFailure as e:
            logger.warning(
                "Handler reported failure",
                extra={"job_id": context.job_id, "error": e.message, "attempt": context.attempt},
            )
            return JobResult(success=False, error=e.message)
        except Exception as e:
            logger.exception(
                "Handler raised exception",
                extra={"job_id": context.job_id, "error": str(e)},
            )
            return JobResult(success=False, error=f"Handler exception: {e}")

        if isinstance(outcome, JobResult):
            return outcome
        if outcome is None or isinstance(outcome, dict):
            return JobResult(success=True, output=outcome)
        # Scalars, lists and other plain values
        return JobResult(success=True, output={"value": outcome})


# ============================================================================
# Built-in job handlers
# ============================================================================


async def handle_generic(context: JobContext) -> JobResult:
    """
    Fallback handler for job types without a specific processor.
    """
    logger.info(
        f"Processing job type: {context.job_type}",
        extra={"job_id": context.job_id, "attempt": context.attempt},
    )
    await context.progress.report(10)
    await asyncio.sleep(0.5)

    return JobResult(
        success=True,
        output={
            "processed": True,
            "message": f"Processed with generic handler: {context.job_type}",
            "data": context.payload,
        },
    )


async def _run_steps(context: JobContext, steps: list[tuple[float, int]]) -> None:
    """Sleep through simulated work steps, reporting progress after each."""
    for delay, percent in steps:
        if delay:
            await asyncio.sleep(delay)
        await context.progress.report(percent)


async def handle_data_processing(context: JobContext) -> JobResult:
    """
    Simulated data processing.

    Payload may contain:
    - input: The data reference to process
    """
    logger.info("Processing data job", extra={"job_id": context.job_id})
    await _run_steps(context, [(0, 10), (0.5, 30), (0.5, 60), (0.5, 100)])

    return JobResult(
        success=True,
        output={
            "processed": True,
            "result": f"Processed data: {context.payload.get('input') or 'no input'}",
        },
    )


async def handle_image_processing(context: JobContext) -> JobResult:
    """
    Simulated image processing.

    Payload may contain:
    - imagePath: Location of the image
    """
    logger.info("Processing image job", extra={"job_id": context.job_id})
    await _run_steps(context, [(0, 20), (0.8, 50), (0.8, 100)])

    return JobResult(
        success=True,
        output={
            "processed": True,
            "result": f"Processed image: {context.payload.get('imagePath') or 'unknown'}",
        },
    )


async def handle_email_sending(context: JobContext) -> JobResult:
    """
    Simulated email delivery.

    Payload may contain:
    - recipient: Destination address
    """
    logger.info("Sending email job", extra={"job_id": context.job_id})
    await _run_steps(context, [(0, 50), (0.3, 100)])

    recipient = context.payload.get("recipient") or "unknown recipient"
    return JobResult(
        success=True,
        output={"processed": True, "result": f"Email sent to: {recipient}"},
    )


async def handle_report_generation(context: JobContext) -> JobResult:
    """
    Simulated report generation.

    Payload may contain:
    - reportType: Kind of report to generate
    """
    logger.info("Generating report job", extra={"job_id": context.job_id})
    await _run_steps(context, [(0, 25), (1.0, 50), (1.0, 75), (1.0, 100)])

    return JobResult(
        success=True,
        output={
            "processed": True,
            "result": f"Generated report: {context.payload.get('reportType') or 'standard'}",
            "reportUrl": f"/reports/{context.job_id}",
        },
    )


def create_default_registry() -> HandlerRegistry:
    """Build a registry with the built-in handlers."""
    registry = HandlerRegistry(default_handler=handle_generic)
    registry.register(JOB_TYPE_DATA_PROCESSING, handle_data_processing)
    registry.register(JOB_TYPE_IMAGE_PROCESSING, handle_image_processing)
    registry.register(JOB_TYPE_EMAIL_SENDING, handle_email_sending)
    registry.register(JOB_TYPE_REPORT_GENERATION, handle_report_generation)
    return registry
