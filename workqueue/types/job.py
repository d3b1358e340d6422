"""
Job-related type definitions shared by stores, dispatchers and the admin surface.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from workqueue.config import Settings
from workqueue.constants import DEFAULT_PRIORITY, MAX_DELAY_MS, TERMINAL_STATES, BackoffType, JobState
from workqueue.errors import InvalidJobOptionsError


def to_naive_utc(value: datetime) -> datetime:
    """Stores keep naive UTC timestamps; convert aware datetimes."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Job(BaseModel):
    """
    Snapshot of a job as persisted by a job store.

    Instances are detached copies; mutating one never changes stored state.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    queue_name: str
    payload: Any = None
    priority: int = DEFAULT_PRIORITY
    state: JobState
    attempts: int = 0
    max_attempts: int
    delay_until: datetime | None = None
    last_error: str | None = None
    result: Any = None
    lease_token: str | None = None
    worker_id: str | None = None
    heartbeat_at: datetime | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a terminal state."""
        return self.state in TERMINAL_STATES


class JobOptions(BaseModel):
    """
    Options accepted at enqueue time.

    ``delay`` is in milliseconds. ``run_at`` schedules for an absolute time;
    when both are given the later of the two is used. Unset values fall back
    to the queue's job defaults, then to the retry policy.
    """

    delay: int | None = Field(default=None, ge=0, le=MAX_DELAY_MS)
    run_at: datetime | None = None
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1)

    @field_validator("run_at")
    @classmethod
    def normalize_run_at(cls, value: datetime | None) -> datetime | None:
        return to_naive_utc(value) if value is not None else None


@dataclass(frozen=True)
class Backoff:
    """Retry delay shape for a queue: ``delay_ms`` fixed, or doubling per attempt."""

    type: BackoffType
    delay_ms: int

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "type", BackoffType(self.type))
        except ValueError as e:
            raise InvalidJobOptionsError(f"Unknown backoff type: {self.type}") from e
        if self.delay_ms < 0:
            raise InvalidJobOptionsError("backoff delay_ms must be non-negative")


@dataclass(frozen=True)
class Retention:
    """
    Automatic removal of finished jobs.

    Ages are milliseconds since ``finished_at``; ``completed_count`` keeps
    only the newest completed jobs. A rule set to None is disabled.
    """

    completed_age_ms: int | None = None
    completed_count: int | None = None
    failed_age_ms: int | None = None

    def __post_init__(self) -> None:
        for name in ("completed_age_ms", "completed_count", "failed_age_ms"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise InvalidJobOptionsError(f"{name} must be non-negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "Retention":
        return cls(
            completed_age_ms=settings.retention_completed_age_ms,
            completed_count=settings.retention_completed_count,
            failed_age_ms=settings.retention_failed_age_ms,
        )

    @property
    def enabled(self) -> bool:
        return any(
            value is not None
            for value in (self.completed_age_ms, self.completed_count, self.failed_age_ms)
        )


@dataclass(frozen=True)
class QueueConfig:
    """
    Immutable snapshot of a queue's configuration.

    Dispatchers read a fresh snapshot every iteration so admin updates are
    never observed half-applied. The claim window and consumer fields are
    bookkeeping maintained by the store; ``upsert_queue`` never overwrites
    them.
    """

    name: str
    concurrency: int
    is_paused: bool = False
    rate_limit_max: int | None = None
    rate_limit_window_ms: int | None = None

    # Job defaults
    default_max_attempts: int | None = None
    default_priority: int | None = None
    backoff_type: BackoffType | None = None
    backoff_delay_ms: int | None = None

    # Retention
    keep_completed_ms: int | None = None
    keep_completed_count: int | None = None
    keep_failed_ms: int | None = None

    # Store bookkeeping
    window_started_at: datetime | None = None
    window_claims: int = 0
    consumer_seen_at: datetime | None = None

    @property
    def has_rate_limit(self) -> bool:
        return bool(self.rate_limit_max and self.rate_limit_window_ms)

    @property
    def backoff(self) -> Backoff | None:
        if self.backoff_type is None or self.backoff_delay_ms is None:
            return None
        return Backoff(self.backoff_type, self.backoff_delay_ms)

    @property
    def retention(self) -> Retention | None:
        retention = Retention(
            completed_age_ms=self.keep_completed_ms,
            completed_count=self.keep_completed_count,
            failed_age_ms=self.keep_failed_ms,
        )
        return retention if retention.enabled else None

    def _window_expired(self, now: datetime) -> bool:
        if self.window_started_at is None or self.rate_limit_window_ms is None:
            return True
        return now - self.window_started_at >= timedelta(milliseconds=self.rate_limit_window_ms)

    def claims_exhausted(self, now: datetime) -> bool:
        """
        Check whether the rate limit admits no more claims right now.

        The limit is a fixed window shared by every claimer of the queue: at
        most ``rate_limit_max`` claims between ``window_started_at`` and the
        end of the window.
        """
        return (
            self.has_rate_limit
            and not self._window_expired(now)
            and self.window_claims >= (self.rate_limit_max or 0)
        )

    def after_claim(self, now: datetime) -> "QueueConfig":
        """Bookkeeping after a successful claim at ``now``."""
        if not self.has_rate_limit:
            return replace(self, consumer_seen_at=now)
        if self._window_expired(now):
            return replace(self, window_started_at=now, window_claims=1, consumer_seen_at=now)
        return replace(self, window_claims=self.window_claims + 1, consumer_seen_at=now)

    def window_reset_in(self, now: datetime) -> float | None:
        """
        Seconds until an exhausted claim window reopens.

        Returns:
            None when the rate limit currently admits claims.
        """
        if not self.claims_exhausted(now) or self.window_started_at is None:
            return None
        reopens = self.window_started_at + timedelta(milliseconds=self.rate_limit_window_ms or 0)
        return max(0.0, (reopens - now).total_seconds())


class QueueStats(BaseModel):
    """Per-queue job counts by state."""

    name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False
    consumer_seen_at: datetime | None = None


def next_occurrence(cron: str | None, every_ms: int | None, after: datetime) -> datetime:
    """
    Next run of a repeat schedule strictly after ``after``.

    Cron expressions are evaluated in UTC.
    """
    if cron is not None:
        return croniter(cron, after).get_next(datetime)
    if every_ms is None:
        raise InvalidJobOptionsError("A repeat schedule needs cron or every_ms")
    return after + timedelta(milliseconds=every_ms)


class RepeatableJob(BaseModel):
    """
    A job definition enqueued again on a cron or fixed-interval schedule.

    Identified by ``(queue_name, name)``; every run is an ordinary job in
    that queue. Missed runs are not replayed: a scheduler that was down
    enqueues one job and moves ``next_run_at`` past the current time.
    """

    model_config = ConfigDict(from_attributes=True)

    queue_name: str = Field(min_length=1)
    name: str = Field(min_length=1)
    payload: Any = None
    cron: str | None = None
    every_ms: int | None = Field(default=None, ge=1, le=MAX_DELAY_MS)
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    next_run_at: datetime
    last_run_at: datetime | None = None
    created_at: datetime

    @model_validator(mode="after")
    def check_schedule(self) -> "RepeatableJob":
        if (self.cron is None) == (self.every_ms is None):
            raise ValueError("Exactly one of cron or every_ms is required")
        if self.cron is not None and not croniter.is_valid(self.cron):
            raise ValueError(f"Invalid cron expression: {self.cron}")
        return self

    def next_after(self, moment: datetime) -> datetime:
        return next_occurrence(self.cron, self.every_ms, moment)


ProgressReporter = Callable[[Any], Awaitable[None]]


@dataclass
class JobContext:
    """
    Context passed to handlers alongside the payload.

    ``cancel_event`` is the cooperative cancellation signal: long-running
    handlers should check it and stop early once it is set.
    """

    job_id: str
    queue_name: str
    attempt: int
    max_attempts: int
    created_at: datetime
    worker_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    _progress: ProgressReporter | None = None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def report_progress(self, progress: Any) -> None:
        """Emit a progress event for this job."""
        if self._progress is not None:
            await self._progress(progress)
