"""
SQLAlchemy database models.
Defines the jobs, queues and repeatable_jobs tables.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from workqueue.constants import DEFAULT_PRIORITY, JobState


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueModel(Base):
    """
    Queue configuration row.

    The row doubles as the claim mutex for its queue: claimers lock it with
    ``SELECT ... FOR UPDATE`` so the active-count check and the claim happen
    as one serialized step.
    """

    __tablename__ = "queues"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    concurrency: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rate_limit_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_window_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Job defaults
    default_max_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    default_priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    backoff_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    backoff_delay_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Retention
    keep_completed_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    keep_completed_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    keep_failed_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Claim window and consumer liveness, written under the row lock
    window_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    window_claims: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consumer_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"QueueModel(name={self.name}, concurrency={self.concurrency}, "
            f"paused={self.is_paused})"
        )


class JobModel(Base):
    """
    Job row, the authoritative source of truth for job state.

    Key constraints:
    - state transitions follow the JobState machine
    - lease_token identifies the current claim; completion reports must match it
    - heartbeat_at tracks liveness of active jobs for stale recovery
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Job payload
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)

    # State and ordering
    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            create_constraint=True,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.WAITING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Scheduling
    delay_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Claim management
    lease_token: Mapped[str | None] = mapped_column(String(32), nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outcome
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[Any] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        # Claim polling: waiting jobs of a queue in priority order
        Index("ix_jobs_claim", "queue_name", "state", "priority", "created_at"),
        # Delayed promotion
        Index("ix_jobs_delay", "state", "delay_until"),
        # Stale recovery
        Index("ix_jobs_heartbeat", "state", "heartbeat_at"),
        # Cleanup of terminal jobs
        Index("ix_jobs_finished", "queue_name", "state", "finished_at"),
    )

    def __repr__(self) -> str:
        return (
            f"JobModel(id={self.id}, queue={self.queue_name}, "
            f"state={self.state}, attempts={self.attempts}/{self.max_attempts})"
        )


class RepeatableJobModel(Base):
    """Repeatable job definition; the scheduler enqueues a job per run."""

    __tablename__ = "repeatable_jobs"

    queue_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)

    # Schedule: exactly one of cron / every_ms
    cron: Mapped[str | None] = mapped_column(String(255), nullable=True)
    every_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)

    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_repeatable_jobs_next_run", "next_run_at"),)

    def __repr__(self) -> str:
        return (
            f"RepeatableJobModel(queue={self.queue_name}, name={self.name}, "
            f"next_run_at={self.next_run_at})"
        )
