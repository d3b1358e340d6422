"""
Job store module.
Contains the store contract and the in-memory implementation.
"""

from workqueue.store.base import JobStore
from workqueue.store.memory import InMemoryJobStore

__all__ = ["JobStore", "InMemoryJobStore"]
