"""
API routes module.
"""

from workqueue.api.routes.auth import router as auth_router
from workqueue.api.routes.health import router as health_router
from workqueue.api.routes.queues import router as queues_router

__all__ = ["queues_router", "auth_router", "health_router"]
