"""
SQLAlchemy database models.
Defines the job and transition tables backing `SqlJobStore`.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.constants import DEFAULT_MAX_ATTEMPTS, JobStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobRecord(Base):
    """
    Persisted job.

    Retains everything needed to resume monitoring after a process
    restart: identity, type, payload, priority, status, attempt counters,
    timestamps and outcome.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    # Status and priority
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.WAITING.value)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)

    # Retry tracking
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    backoff_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    delay_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Execution
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Retention
    remove_on_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    remove_on_fail: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        # Per-type statistics and listings
        Index("ix_jobs_type_status", "job_type", "status"),
        # Dispatch order among waiting jobs
        Index("ix_jobs_dispatch", "status", "priority", "created_at"),
        # Delay promotion
        Index("ix_jobs_delay_due", "status", "delay_until"),
        # Health window and retention sweep
        Index("ix_jobs_finished", "status", "finished_at"),
    )

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, type={self.job_type}, "
            f"status={self.status}, attempt={self.attempts_made}/{self.max_attempts})"
        )


class JobTransitionRecord(Base):
    """One status change of a job, in insertion order."""

    __tablename__ = "job_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
