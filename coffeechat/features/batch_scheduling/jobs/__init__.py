"""
Job runners for the batch scheduling feature.
"""

from .calendar_sync_job import run_calendar_sync, start_calendar_sync_scheduler
from .expiry_cleanup_job import ExpiryCleanupJob, expiry_cleanup_job, start_expiry_cleanup_scheduler

__all__ = [
    "ExpiryCleanupJob",
    "expiry_cleanup_job",
    "run_calendar_sync",
    "start_calendar_sync_scheduler",
    "start_expiry_cleanup_scheduler",
]
