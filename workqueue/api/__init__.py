"""
API module.
Contains the FastAPI admin application and routes.
"""

from workqueue.api.main import create_app

__all__ = ["create_app"]
