"""
Background Job Queue Engine

A persistent job queue with concurrency-bounded dispatch, retry/backoff,
delayed jobs, administrative control, and health telemetry.
"""

from workqueue.engine import QueueEngine
from workqueue.errors import PermanentJobError, PersistenceError

__version__ = "1.0.0"

__all__ = ["QueueEngine", "PermanentJobError", "PersistenceError", "__version__"]
