"""
Time source used by stores and schedulers.

All timestamps are naive UTC so they compare consistently across
PostgreSQL, SQLite and the in-memory store.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
