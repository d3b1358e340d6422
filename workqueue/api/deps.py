"""
Shared FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from workqueue.admin.service import AdminService
from workqueue.engine import QueueEngine


def get_engine(request: Request) -> QueueEngine:
    """The engine the app was created with."""
    return request.app.state.engine


def get_admin(engine: Annotated[QueueEngine, Depends(get_engine)]) -> AdminService:
    return engine.admin


Engine = Annotated[QueueEngine, Depends(get_engine)]
Admin = Annotated[AdminService, Depends(get_admin)]
