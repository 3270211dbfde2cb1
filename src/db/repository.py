"""
SQL-backed job store.
Implements the `JobStore` capability set on async SQLAlchemy.
"""

import logging
from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from src.constants import BackoffKind, JobStatus
from src.db.connection import create_session_factory, session_scope
from src.db.models import Base, JobRecord, JobTransitionRecord
from src.errors import JobNotFoundError, StoreUnavailableError
from src.store.base import JobFilter, JobStore, QueryOrder, check_transition
from src.types.job import BackoffPolicy, Job, StateTransition, utc_now

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by drivers without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlJobStore(JobStore):
    """
    Durable job store.

    Every update is a compare-and-set: the row is read, the precondition
    checked, and the UPDATE is guarded by the observed status and attempt
    count so a concurrent writer makes it match zero rows.
    """

    def __init__(self, engine: AsyncEngine):
        """
        Initialize the store with a database engine.

        Args:
            engine: The async database engine.
        """
        self._engine = engine
        self._session_factory = create_session_factory(engine)

    async def create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        async with self._guard():
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Job store schema ready")

    @asynccontextmanager
    async def _guard(self) -> AsyncGenerator[None]:
        try:
            yield
        except (OperationalError, InterfaceError, OSError) as e:
            logger.error("Job store backend unavailable", extra={"error": str(e)})
            raise StoreUnavailableError(f"Job store backend unavailable: {e}") from e

    @staticmethod
    def _to_row_values(values: dict[str, Any]) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for key, value in values.items():
            if key == "backoff":
                policy = value if isinstance(value, BackoffPolicy) else BackoffPolicy(**value)
                row["backoff_kind"] = policy.kind.value
                row["backoff_delay_ms"] = policy.base_delay_ms
            elif key == "status":
                row["status"] = JobStatus(value).value
            elif key in ("transitions", "id"):
                continue
            else:
                row[key] = value
        return row

    @staticmethod
    def _to_domain(record: JobRecord, transitions: Sequence[JobTransitionRecord]) -> Job:
        return Job(
            id=record.id,
            job_type=record.job_type,
            payload=record.payload or {},
            priority=record.priority,
            max_attempts=record.max_attempts,
            attempts_made=record.attempts_made,
            backoff=BackoffPolicy(
                kind=BackoffKind(record.backoff_kind),
                base_delay_ms=record.backoff_delay_ms,
            ),
            status=JobStatus(record.status),
            delay_until=_aware(record.delay_until),
            progress=record.progress,
            result=record.result,
            failure_reason=record.failure_reason,
            last_error=record.last_error,
            worker_id=record.worker_id,
            remove_on_complete=record.remove_on_complete,
            remove_on_fail=record.remove_on_fail,
            created_at=_aware(record.created_at),
            processed_at=_aware(record.processed_at),
            finished_at=_aware(record.finished_at),
            updated_at=_aware(record.updated_at),
            transitions=[
                StateTransition(
                    from_status=JobStatus(t.from_status) if t.from_status else None,
                    to_status=JobStatus(t.to_status),
                    at=_aware(t.at),
                )
                for t in transitions
            ],
        )

    async def _load_transitions(
        self,
        session: AsyncSession,
        job_ids: Sequence[str],
    ) -> dict[str, list[JobTransitionRecord]]:
        grouped: dict[str, list[JobTransitionRecord]] = {job_id: [] for job_id in job_ids}
        if not job_ids:
            return grouped
        stmt = (
            select(JobTransitionRecord)
            .where(JobTransitionRecord.job_id.in_(job_ids))
            .order_by(JobTransitionRecord.id.asc())
        )
        result = await session.execute(stmt)
        for transition in result.scalars().all():
            grouped[transition.job_id].append(transition)
        return grouped

    async def create(self, job: Job) -> Job:
        async with self._guard():
            async with session_scope(self._session_factory) as session:
                row = self._to_row_values(job.model_dump(exclude={"transitions"}))
                row["updated_at"] = job.created_at
                record = JobRecord(id=job.id, **row)
                session.add(record)
                session.add(
                    JobTransitionRecord(
                        job_id=job.id,
                        from_status=None,
                        to_status=job.status.value,
                        at=job.created_at,
                    )
                )
                await session.flush()

                transitions = await self._load_transitions(session, [job.id])
                logger.debug(
                    "Created job record",
                    extra={"job_id": job.id, "job_type": job.job_type},
                )
                return self._to_domain(record, transitions[job.id])

    async def get(self, job_id: str) -> Job:
        async with self._guard():
            async with session_scope(self._session_factory) as session:
                record = await session.get(JobRecord, job_id)
                if record is None:
                    raise JobNotFoundError(job_id)
                transitions = await self._load_transitions(session, [job_id])
                return self._to_domain(record, transitions[job_id])

    async def update(
        self,
        job_id: str,
        values: dict[str, Any],
        *,
        expected_status: Iterable[JobStatus],
        expected_attempt: int | None = None,
    ) -> Job | None:
        expected = {JobStatus(status) for status in expected_status}

        async with self._guard():
            async with session_scope(self._session_factory) as session:
                record = await session.get(JobRecord, job_id)
                if record is None:
                    return None

                current_status = JobStatus(record.status)
                if current_status not in expected:
                    return None
                if expected_attempt is not None and record.attempts_made != expected_attempt:
                    return None

                now = values.get("updated_at") or utc_now()
                row = self._to_row_values(values)
                row["updated_at"] = now

                new_status = JobStatus(row["status"]) if "status" in row else None
                if new_status is not None:
                    check_transition(job_id, current_status, new_status)

                stmt = (
                    update(JobRecord)
                    .where(
                        and_(
                            JobRecord.id == job_id,
                            JobRecord.status == current_status.value,
                            JobRecord.attempts_made == record.attempts_made,
                        )
                    )
                    .values(**row)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    return None

                if new_status is not None and new_status != current_status:
                    session.add(
                        JobTransitionRecord(
                            job_id=job_id,
                            from_status=current_status.value,
                            to_status=new_status.value,
                            at=now,
                        )
                    )
                await session.flush()
                await session.refresh(record)

                transitions = await self._load_transitions(session, [job_id])
                return self._to_domain(record, transitions[job_id])

    async def remove(self, job_id: str) -> bool:
        async with self._guard():
            async with session_scope(self._session_factory) as session:
                await session.execute(
                    delete(JobTransitionRecord).where(JobTransitionRecord.job_id == job_id)
                )
                result = await session.execute(delete(JobRecord).where(JobRecord.id == job_id))
                return result.rowcount > 0

    async def query(self, job_filter: JobFilter) -> list[Job]:
        filters = []
        if job_filter.statuses is not None:
            filters.append(JobRecord.status.in_([s.value for s in job_filter.statuses]))
        if job_filter.job_type is not None:
            filters.append(JobRecord.job_type == job_filter.job_type)
        if job_filter.delay_due_before is not None:
            filters.append(JobRecord.delay_until <= job_filter.delay_due_before)
        if job_filter.finished_after is not None:
            filters.append(JobRecord.finished_at >= job_filter.finished_after)
        if job_filter.finished_before is not None:
            filters.append(JobRecord.finished_at <= job_filter.finished_before)
        if job_filter.updated_before is not None:
            filters.append(JobRecord.updated_at <= job_filter.updated_before)
        if job_filter.remove_on_complete is not None:
            filters.append(JobRecord.remove_on_complete == job_filter.remove_on_complete)
        if job_filter.remove_on_fail is not None:
            filters.append(JobRecord.remove_on_fail == job_filter.remove_on_fail)

        stmt = select(JobRecord)
        if filters:
            stmt = stmt.where(and_(*filters))

        if job_filter.order == QueryOrder.DISPATCH:
            stmt = stmt.order_by(
                JobRecord.priority.desc(), JobRecord.created_at.asc(), JobRecord.id.asc()
            )
        elif job_filter.order == QueryOrder.DELAY_DUE:
            stmt = stmt.order_by(JobRecord.delay_until.asc())
        elif job_filter.order == QueryOrder.RECENTLY_FINISHED:
            stmt = stmt.order_by(JobRecord.finished_at.desc())
        else:
            stmt = stmt.order_by(JobRecord.created_at.asc())

        if job_filter.offset:
            stmt = stmt.offset(job_filter.offset)
        if job_filter.limit is not None:
            stmt = stmt.limit(job_filter.limit)

        async with self._guard():
            async with session_scope(self._session_factory) as session:
                result = await session.execute(stmt)
                records = result.scalars().all()
                transitions = await self._load_transitions(session, [r.id for r in records])
                return [self._to_domain(r, transitions[r.id]) for r in records]

    async def counts(self) -> dict[tuple[str, JobStatus], int]:
        stmt = select(JobRecord.job_type, JobRecord.status, func.count()).group_by(
            JobRecord.job_type, JobRecord.status
        )
        async with self._guard():
            async with session_scope(self._session_factory) as session:
                result = await session.execute(stmt)
                return {
                    (job_type, JobStatus(status)): count
                    for job_type, status, count in result.all()
                }

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("Database connection closed")
