"""
Progress side channel handed to job handlers.
"""

import asyncio
import logging

from src.constants import JobStatus
from src.errors import JobValidationError
from src.store.base import JobStore

logger = logging.getLogger(__name__)


class ProgressReporter:
    """
    Publishes 0-100 progress for one attempt of one job.

    Values lower than the last recorded one are ignored, and nothing is
    written once the job has left ACTIVE or moved on to another attempt.
    """

    def __init__(self, store: JobStore, job_id: str, attempt: int):
        self._store = store
        self._job_id = job_id
        self._attempt = attempt
        self._last = 0
        # Serializes the monotonic check with the write
        self._lock = asyncio.Lock()

    @property
    def last(self) -> int:
        """Last recorded progress value."""
        return self._last

    async def report(self, percent: int) -> bool:
        """
        Record progress for the current attempt.

        Args:
            percent: Integer between 0 and 100.

        Returns:
            True if the value was recorded.

        Raises:
            JobValidationError: If percent is not an integer in 0-100.
        """
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:
            raise JobValidationError(
                f"Progress must be an integer between 0 and 100, got {percent!r}",
                {"job_id": self._job_id},
            )

        async with self._lock:
            if percent < self._last:
                logger.debug(
                    "Ignoring decreasing progress",
                    extra={"job_id": self._job_id, "progress": percent, "last": self._last},
                )
                return False

            updated = await self._store.update(
                self._job_id,
                {"progress": percent},
                expected_status={JobStatus.ACTIVE},
                expected_attempt=self._attempt,
            )
            if updated is None:
                return False

            self._last = percent

        logger.debug(
            "Job progress",
            extra={"job_id": self._job_id, "progress": percent, "attempt": self._attempt},
        )
        return True

    async def __call__(self, percent: int) -> bool:
        return await self.report(percent)
