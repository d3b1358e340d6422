"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from workqueue.constants import JobState
from workqueue.types.job import Job, QueueStats, RepeatableJob


class JobResponse(BaseModel):
    """Full job details response."""

    id: str
    queue_name: str
    payload: Any
    state: JobState
    priority: int
    attempts: int
    max_attempts: int
    delay_until: datetime | None
    last_error: str | None
    result: Any
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls.model_validate(job.model_dump())


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class CleanQueueRequest(BaseModel):
    """Request body for cleaning a queue."""

    grace: int | None = Field(
        default=None, ge=0, description="Only remove jobs finished more than this many ms ago"
    )
    status: JobState | list[JobState] | None = Field(
        default=None, description="Terminal state(s) to remove; defaults to completed"
    )


class CleanQueueResponse(BaseModel):
    """Response body after cleaning a queue."""

    queue: str
    removed: int


class RetryFailedRequest(BaseModel):
    """Request body for bulk-retrying failed jobs."""

    limit: int | None = Field(default=None, ge=1, le=10_000)


class RetryFailedResponse(BaseModel):
    """Response body after bulk-retrying failed jobs."""

    queue: str
    retried: int


class JobActionResponse(BaseModel):
    """Response body for single-job admin actions."""

    id: str
    action: str
    applied: bool
    state: JobState | None = None


class QueueActionResponse(BaseModel):
    """Response body for pause/resume."""

    queue: str
    paused: bool


class RepeatableJobResponse(BaseModel):
    """Repeatable job definition."""

    queue_name: str
    name: str
    payload: Any
    cron: str | None
    every_ms: int | None
    priority: int | None
    max_attempts: int | None
    next_run_at: datetime
    last_run_at: datetime | None

    @classmethod
    def from_repeatable(cls, repeatable: RepeatableJob) -> "RepeatableJobResponse":
        return cls.model_validate(repeatable.model_dump())


class RepeatableListResponse(BaseModel):
    """Repeatable jobs of a queue."""

    queue: str
    repeatables: list[RepeatableJobResponse]


class StatsResponse(BaseModel):
    """Stats for one or more queues."""

    queues: list[QueueStats]


class HealthIssueResponse(BaseModel):
    """One violated health threshold."""

    queue: str | None
    kind: str
    value: int | None = None
    threshold: int | None = None
    message: str


class QueueHealthResponse(BaseModel):
    """Queue health check response."""

    healthy: bool
    status: str
    issues: list[HealthIssueResponse]
    stats: list[QueueStats]
    engine: dict[str, Any] | None = None


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="Operator API key")
    operator: str = Field(..., description="Operator identifier")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class ServiceHealthResponse(BaseModel):
    """Service liveness response."""

    status: str
    version: str
    store: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
