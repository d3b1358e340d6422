"""
Exception hierarchy for the job queue engine.
"""


class WorkQueueError(Exception):
    """Base class for all engine errors."""


class PersistenceError(WorkQueueError):
    """The job store is unreachable or rejected an operation."""


class PermanentJobError(WorkQueueError):
    """
    Raised by a handler to signal a non-retryable failure.

    The job moves straight to ``failed`` regardless of remaining attempts.
    """


class HandlerRegistrationError(WorkQueueError):
    """A handler was registered twice or after dispatch started."""


class JobNotFoundError(WorkQueueError):
    """No job exists with the given id (in the given queue)."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class QueueNotFoundError(WorkQueueError):
    """No queue with the given name is known to the store."""

    def __init__(self, queue_name: str):
        super().__init__(f"Queue not found: {queue_name}")
        self.queue_name = queue_name


class RepeatableNotFoundError(WorkQueueError):
    """No repeatable job with the given name exists in the queue."""

    def __init__(self, queue_name: str, name: str):
        super().__init__(f"Repeatable job not found: {queue_name}/{name}")
        self.queue_name = queue_name
        self.name = name


class InvalidJobOptionsError(WorkQueueError):
    """Enqueue options failed validation."""
