"""
Scheduler module.
Promotes due delayed jobs, recovers stale active jobs, enqueues repeatable
runs and applies retention of finished jobs.
"""

from workqueue.scheduler.main import Scheduler, SweepResult

__all__ = ["Scheduler", "SweepResult"]
