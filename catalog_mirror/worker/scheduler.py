"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from catalog_mirror.config import settings
from catalog_mirror.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    The catalog sync runs every settings.sync_interval_minutes. It never
    overlaps itself: max_instances=1 in-process, the Redis lock across
    processes.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    if not settings.sync_enabled:
        logger.info("Scheduler configured: catalog sync disabled")
        return scheduler

    interval = max(1, settings.sync_interval_minutes)
    scheduler.add_job(
        task_runner.sync_catalog,
        IntervalTrigger(minutes=interval),
        id="catalog_sync",
        name="Reconcile local products with the upstream catalog",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    logger.info("Scheduler configured: catalog sync every %d minutes", interval)
    return scheduler
