"""
Admin module.
Operator actions on queues and jobs.
"""

from workqueue.admin.service import AdminService

__all__ = ["AdminService"]
