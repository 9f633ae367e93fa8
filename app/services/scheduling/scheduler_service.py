"""
NIMBUS - Scheduling Service
Background jobs with APScheduler: bet resolution and accuracy summaries
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)

from app.core.config import Settings, settings
from app.core.database import DatabaseManager
from app.services.betting.grading import BetResolver
from app.services.weather.accuracy import AccuracyService

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Job execution status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    MISSED = "missed"


class JobCategory(str, Enum):
    """Job categories"""
    SETTLEMENT = "settlement"
    MAINTENANCE = "maintenance"


class ScheduledJob:
    """Scheduled job definition"""

    def __init__(
        self,
        job_id: str,
        name: str,
        category: JobCategory,
        func: Callable,
        trigger: str,  # 'interval' or 'cron'
        trigger_args: Dict[str, Any],
        enabled: bool = True,
        max_instances: int = 1,
        coalesce: bool = True,
        misfire_grace_time: int = 60
    ):
        self.job_id = job_id
        self.name = name
        self.category = category
        self.func = func
        self.trigger = trigger
        self.trigger_args = trigger_args
        self.enabled = enabled
        self.max_instances = max_instances
        self.coalesce = coalesce
        self.misfire_grace_time = misfire_grace_time

        # Execution tracking
        self.last_run: Optional[datetime] = None
        self.last_status: JobStatus = JobStatus.PENDING
        self.run_count: int = 0
        self.error_count: int = 0
        self.last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "category": self.category.value,
            "enabled": self.enabled,
            "trigger": self.trigger,
            "trigger_args": self.trigger_args,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_status": self.last_status.value,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


def parse_cron(cron_str: str) -> Dict[str, Any]:
    """Parse a 5-field cron string to CronTrigger args"""
    parts = cron_str.split()
    if len(parts) != 5:
        logger.warning(f"Invalid cron expression {cron_str!r}, using 03:00 daily")
        return {"hour": "3", "minute": "0"}

    fields = ("minute", "hour", "day", "month", "day_of_week")
    return {name: part for name, part in zip(fields, parts) if part != "*"}


class SchedulerService:
    """Runs settlement and maintenance jobs on the event loop"""

    def __init__(
        self,
        resolver: BetResolver,
        db: DatabaseManager,
        accuracy: Optional[AccuracyService] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or settings
        self.enabled = self.config.SCHEDULER_ENABLED
        self.resolver = resolver
        self.db = db
        self.accuracy = accuracy or AccuracyService()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._jobs: Dict[str, ScheduledJob] = {}
        self._running = False

    def initialize(self) -> None:
        """Create the scheduler and register the default jobs"""
        if not self.enabled:
            logger.info("Scheduler is disabled")
            return

        self._scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60
            },
            timezone='UTC'
        )

        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._register_default_jobs()
        logger.info("Scheduler initialized")

    async def start(self) -> None:
        if not self.enabled or not self._scheduler or self._running:
            return
        self._scheduler.start()
        self._running = True
        logger.info("Scheduler started")

    async def stop(self) -> None:
        if self._scheduler and self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    def _register_default_jobs(self) -> None:
        default_jobs = [
            ScheduledJob(
                job_id="resolve_bets",
                name="Resolve Pending Bets",
                category=JobCategory.SETTLEMENT,
                func=self.resolve_bets_job,
                trigger="interval",
                trigger_args={"seconds": self.config.GRADING_INTERVAL}
            ),
            ScheduledJob(
                job_id="accuracy_summaries",
                name="Rebuild Accuracy Summaries",
                category=JobCategory.MAINTENANCE,
                func=self.accuracy_summary_job,
                trigger="cron",
                trigger_args=parse_cron(self.config.ACCURACY_SUMMARY_CRON)
            ),
        ]
        for job in default_jobs:
            self.register_job(job)

    async def resolve_bets_job(self) -> Dict[str, Any]:
        """Verify and grade every due bet; raises after all cities if the primary source failed"""
        logger.info("[Scheduler] Resolving pending bets")
        summary = await self.resolver.resolve_pending()
        return summary.to_dict()

    async def accuracy_summary_job(self) -> int:
        async with self.db.session() as session:
            rows = await self.accuracy.rebuild_summaries(session)
        logger.info(f"[Scheduler] Rebuilt {rows} accuracy summaries")
        return rows

    def register_job(self, job: ScheduledJob) -> None:
        if not self._scheduler:
            logger.warning("Scheduler not initialized, cannot register job")
            return

        self._jobs[job.job_id] = job
        if not job.enabled:
            return

        if job.trigger == "interval":
            trigger = IntervalTrigger(**job.trigger_args)
        else:
            trigger = CronTrigger(**job.trigger_args)

        self._scheduler.add_job(
            job.func,
            trigger=trigger,
            id=job.job_id,
            name=job.name,
            max_instances=job.max_instances,
            coalesce=job.coalesce,
            misfire_grace_time=job.misfire_grace_time,
            replace_existing=True
        )
        logger.info(f"Registered job: {job.job_id} ({job.name})")

    def run_job_now(self, job_id: str) -> bool:
        """Trigger immediate job execution"""
        if not self._scheduler or job_id not in self._jobs:
            return False
        job = self._scheduler.get_job(job_id)
        if job is None:
            return False
        job.modify(next_run_time=datetime.now(timezone.utc))
        return True

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        job = self._jobs.get(event.job_id)
        if job:
            job.last_run = datetime.now(timezone.utc)
            job.last_status = JobStatus.COMPLETED
            job.run_count += 1
        logger.debug(f"Job executed: {event.job_id}")

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        job = self._jobs.get(event.job_id)
        if job:
            job.last_run = datetime.now(timezone.utc)
            job.last_status = JobStatus.FAILED
            job.error_count += 1
            job.last_error = str(event.exception) if event.exception else "Unknown error"
        logger.error(f"Job failed: {event.job_id} - {event.exception}")

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        job = self._jobs.get(event.job_id)
        if job:
            job.last_status = JobStatus.MISSED
        logger.warning(f"Job missed: {event.job_id}")

    def get_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for job_id, job in self._jobs.items():
            info = job.to_dict()
            next_run = None
            if self._scheduler:
                scheduler_job = self._scheduler.get_job(job_id)
                if scheduler_job:
                    next_run = scheduler_job.next_run_time
            info["next_run"] = next_run.isoformat() if next_run else None
            jobs.append(info)
        return jobs

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self._running,
            "total_jobs": len(self._jobs),
            "jobs": self.get_jobs(),
        }
