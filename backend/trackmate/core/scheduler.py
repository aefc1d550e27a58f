"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(ingest) -> AsyncIOScheduler:
    """Create and configure the scheduler with all jobs."""
    from trackmate.config import settings

    scheduler = AsyncIOScheduler()

    # Drop state of ended or idle trips
    scheduler.add_job(
        ingest.sweep,
        "interval",
        seconds=settings.sweep_interval_seconds,
        id="sweep_idle_trips",
        name="Drop state of ended or idle trips",
        max_instances=1,
    )

    return scheduler
