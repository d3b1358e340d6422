"""
Worker module.
Handler registry and per-queue dispatchers.
"""

from workqueue.worker.dispatcher import QueueDispatcher
from workqueue.worker.registry import HandlerRegistry, HandlerSpec, JobHandler, RateLimit

__all__ = [
    "HandlerRegistry",
    "HandlerSpec",
    "JobHandler",
    "QueueDispatcher",
    "RateLimit",
]
