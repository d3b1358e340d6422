"""
Database module.
Contains database connection, models, and the SQL job store.
"""

from workqueue.db.connection import (
    Database,
    create_engine_from_settings,
    get_test_engine,
)
from workqueue.db.models import Base, JobModel, QueueModel, RepeatableJobModel
from workqueue.db.store import SqlJobStore

__all__ = [
    "Database",
    "create_engine_from_settings",
    "get_test_engine",
    "Base",
    "JobModel",
    "QueueModel",
    "RepeatableJobModel",
    "SqlJobStore",
]
