"""Scheduling service module."""

from .scheduler_service import (
    JobCategory,
    JobStatus,
    ScheduledJob,
    SchedulerService,
    parse_cron,
)

__all__ = [
    "JobCategory",
    "JobStatus",
    "ScheduledJob",
    "SchedulerService",
    "parse_cron",
]
