"""
Event type definitions for lifecycle notifications.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from workqueue.clock import utcnow
from workqueue.constants import EventType, JobState
from workqueue.types.job import Job


class JobEvent(BaseModel):
    """
    Event emitted when a job or queue changes state.

    Queue-level events (paused/resumed) carry no ``job_id``.
    """

    event_type: EventType
    queue_name: str
    job_id: str | None = None
    state: JobState | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] | None = None

    @classmethod
    def for_job(
        cls,
        event_type: EventType,
        job: Job,
        **data: Any,
    ) -> "JobEvent":
        """Create an event describing ``job`` in its current state."""
        return cls(
            event_type=event_type,
            queue_name=job.queue_name,
            job_id=job.id,
            state=job.state,
            data=data or None,
        )

    @classmethod
    def enqueued(cls, job: Job) -> "JobEvent":
        """Create a job enqueued event."""
        return cls.for_job(
            EventType.ENQUEUED,
            job,
            priority=job.priority,
            delay_until=job.delay_until.isoformat() if job.delay_until else None,
        )

    @classmethod
    def active(cls, job: Job, worker_id: str) -> "JobEvent":
        """Create a job claimed event."""
        return cls.for_job(
            EventType.ACTIVE, job, worker_id=worker_id, attempt=job.attempts
        )

    @classmethod
    def progress(cls, job: Job, progress: Any) -> "JobEvent":
        """Create a handler-reported progress event."""
        return cls.for_job(EventType.PROGRESS, job, progress=progress)

    @classmethod
    def completed(cls, job: Job, duration_seconds: float) -> "JobEvent":
        """Create a job completed event."""
        return cls.for_job(
            EventType.COMPLETED,
            job,
            attempts=job.attempts,
            duration_seconds=round(duration_seconds, 6),
        )

    @classmethod
    def failed(cls, job: Job) -> "JobEvent":
        """Create a terminal failure event."""
        return cls.for_job(
            EventType.FAILED, job, error=job.last_error, attempts=job.attempts
        )

    @classmethod
    def retry_scheduled(cls, job: Job) -> "JobEvent":
        """Create a retry-scheduled event."""
        return cls.for_job(
            EventType.RETRY_SCHEDULED,
            job,
            error=job.last_error,
            attempt=job.attempts,
            delay_until=job.delay_until.isoformat() if job.delay_until else None,
        )

    @classmethod
    def queue_event(cls, event_type: EventType, queue_name: str) -> "JobEvent":
        """Create a queue-level event such as paused/resumed."""
        return cls(event_type=event_type, queue_name=queue_name)
