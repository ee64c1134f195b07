"""Job scheduler using APScheduler with async support."""

from __future__ import annotations

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from earningstable.core.config import settings
from earningstable.core.logging import get_logger

from .orchestrator import PipelineOrchestrator


logger = get_logger("jobs.scheduler")

INTERVAL_JOB_ID = "pipeline_interval"
RESET_JOB_ID = "daily_reset"

# Global scheduler instance
_scheduler: Optional["JobScheduler"] = None


def interval_trigger() -> CronTrigger:
    """Every ``interval_minutes`` within ``interval_hours``, Mon-Fri, exchange-local."""
    return CronTrigger(
        minute=f"*/{settings.interval_minutes}",
        hour=settings.interval_hours,
        day_of_week="mon-fri",
        timezone=settings.tz,
    )


def reset_trigger() -> CronTrigger:
    reset_at = settings.reset_time
    return CronTrigger(hour=reset_at.hour, minute=reset_at.minute, timezone=settings.tz)


class JobScheduler:
    """Arms the interval and daily-reset triggers for one orchestrator."""

    def __init__(self, orchestrator: PipelineOrchestrator | None = None):
        self.orchestrator = orchestrator or PipelineOrchestrator()
        self._scheduler = AsyncIOScheduler(
            timezone=settings.tz,
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # Only one instance per job at a time
                "misfire_grace_time": 60,
            },
        )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Recover stale data, then arm the triggers."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        if not settings.scheduler_enabled:
            logger.info("Scheduler disabled via SCHEDULER_ENABLED=false")
            return

        await self.orchestrator.recover_on_boot()

        self._scheduler.add_job(
            self.orchestrator.on_interval_tick,
            trigger=interval_trigger(),
            id=INTERVAL_JOB_ID,
            name="Pipeline (earnings -> quotes -> report)",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.orchestrator.on_daily_reset,
            trigger=reset_trigger(),
            id=RESET_JOB_ID,
            name="Daily reset",
            replace_existing=True,
        )

        self._scheduler.start()
        self._running = True
        logger.info(
            f"Job scheduler started: every {settings.interval_minutes} min "
            f"(hours {settings.interval_hours}, Mon-Fri), reset at {settings.daily_reset_time} "
            f"{settings.exchange_timezone}"
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        self._scheduler.shutdown(wait=False)
        await self.orchestrator.shutdown()
        self._running = False
        logger.info("Job scheduler stopped")

    def get_jobs_status(self) -> list:
        """Get status of all scheduled jobs."""
        jobs = []
        for job in self._scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": job.next_run_time.isoformat()
                    if job.next_run_time
                    else None,
                    "pending": job.pending,
                }
            )
        return jobs


def get_scheduler() -> Optional[JobScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def start_scheduler(orchestrator: PipelineOrchestrator | None = None) -> JobScheduler:
    """Start the global scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = JobScheduler(orchestrator)
    await _scheduler.start()
    return _scheduler


async def stop_scheduler() -> None:
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler:
        await _scheduler.stop()
        _scheduler = None
