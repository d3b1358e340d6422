"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (claimed by a dispatcher)
    - DELAYED -> WAITING (delay elapsed, promoted by the scheduler)
    - ACTIVE -> COMPLETED (handler returned)
    - ACTIVE -> DELAYED / WAITING (retryable failure, backoff applied)
    - ACTIVE -> FAILED (attempts exhausted or permanent failure)
    - FAILED -> WAITING (explicit administrative retry)
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES: frozenset[JobState] = frozenset({JobState.COMPLETED, JobState.FAILED})


class BackoffType(StrEnum):
    """How the retry delay grows between attempts."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class EventType(StrEnum):
    """Lifecycle events emitted by the engine."""

    ENQUEUED = "enqueued"
    ACTIVE = "active"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retryScheduled"
    RETRIED = "retried"
    REMOVED = "removed"
    STALLED = "stalled"
    PAUSED = "paused"
    RESUMED = "resumed"


# Default values
DEFAULT_PRIORITY = 0
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
STALLED_ERROR = "stalled: no heartbeat"
# Longest accepted enqueue delay (ten years)
MAX_DELAY_MS = 10 * 365 * 24 * 60 * 60 * 1000

# API constants
ADMIN_PREFIX = "/admin/queues"

# Metrics names
METRIC_QUEUE_DEPTH = "workqueue_queue_depth"
METRIC_JOBS_ENQUEUED = "workqueue_jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "workqueue_jobs_claimed_total"
METRIC_JOBS_FINISHED = "workqueue_jobs_finished_total"
METRIC_JOB_DURATION = "workqueue_job_duration_seconds"
METRIC_JOB_EVENTS = "workqueue_job_events_total"
METRIC_STALE_RECOVERED = "workqueue_stale_recovered_total"
METRIC_JOBS_PRUNED = "workqueue_jobs_pruned_total"
METRIC_API_REQUESTS = "workqueue_api_requests_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
