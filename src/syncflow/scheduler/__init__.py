"""Scheduling package for SyncFlow."""

from .job_scheduler import JobScheduler, SchedulerError
from .scheduler_manager import SchedulerManager

__all__ = [
    "JobScheduler",
    "SchedulerError",
    "SchedulerManager"
]
