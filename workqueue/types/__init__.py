"""
Type definitions for the job queue engine.
Contains input/output type definitions grouped by module.
"""

from workqueue.types.api import (
    AuthRequest,
    CleanQueueRequest,
    CleanQueueResponse,
    ErrorResponse,
    HealthIssueResponse,
    JobActionResponse,
    JobListResponse,
    JobResponse,
    QueueActionResponse,
    QueueHealthResponse,
    RepeatableJobResponse,
    RepeatableListResponse,
    RetryFailedRequest,
    RetryFailedResponse,
    ServiceHealthResponse,
    StatsResponse,
    TokenResponse,
)
from workqueue.types.events import JobEvent
from workqueue.types.job import (
    Job,
    JobContext,
    JobOptions,
    QueueConfig,
    QueueStats,
    RepeatableJob,
)

__all__ = [
    # API types
    "AuthRequest",
    "CleanQueueRequest",
    "CleanQueueResponse",
    "ErrorResponse",
    "HealthIssueResponse",
    "JobActionResponse",
    "JobListResponse",
    "JobResponse",
    "QueueActionResponse",
    "QueueHealthResponse",
    "RepeatableJobResponse",
    "RepeatableListResponse",
    "RetryFailedRequest",
    "RetryFailedResponse",
    "ServiceHealthResponse",
    "StatsResponse",
    "TokenResponse",
    # Job types
    "Job",
    "JobContext",
    "JobOptions",
    "QueueConfig",
    "QueueStats",
    "RepeatableJob",
    # Event types
    "JobEvent",
]
