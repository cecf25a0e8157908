"""
Background job scheduler using APScheduler.

This runs scheduled tasks within the FastAPI process.
For more reliability, you can also use system crontab to hit the /api/cron endpoints.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.jobs.cleanup import sweep_stale_pending
from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

scheduler = AsyncIOScheduler()


def start_scheduler():
    """Start the background scheduler with all jobs."""

    # Pending adjustments older than the timeout are abandoned creates
    sweep_interval = settings.sweep_interval_minutes
    logger.info(f"Scheduling stale adjustment sweep every {sweep_interval} minutes")

    scheduler.add_job(
        sweep_stale_pending,
        IntervalTrigger(minutes=sweep_interval),
        id="sweep_stale_pending",
        name="Clean up stale pending and failed equivalence adjustments",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started with jobs: %s", [job.id for job in scheduler.get_jobs()])


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler shutdown")


def get_scheduler() -> AsyncIOScheduler:
    """Get the scheduler instance."""
    return scheduler
