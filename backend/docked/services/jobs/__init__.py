"""Batch job handlers."""

from docked.services.jobs.base import JobContext, JobHandler, JobResult
from docked.services.jobs.image_update_check import ImageUpdateCheckHandler
from docked.services.jobs.tracked_apps_check import TrackedAppsCheckHandler

__all__ = [
    "JobContext",
    "JobHandler",
    "JobResult",
    "ImageUpdateCheckHandler",
    "TrackedAppsCheckHandler",
]
