"""Cadence: Scheduler Jobs.

APScheduler interval job that runs the full metric sync every
``sync_interval_minutes``.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cadence.config import settings
from cadence.database import session_scope
from cadence.sync.pipeline import scheduled_metric_sync
from cadence.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def metric_sync_job():
    """Sync all metrics, recompute rollups, then scan for anomalies."""
    with session_scope() as session:
        summary = await scheduled_metric_sync(session)
    if summary.get("success"):
        logger.info(
            f"Scheduled sync finished: {summary['succeeded']}/{summary['synced']} ok, "
            f"{summary['anomalies']} anomalies"
        )
    else:
        logger.error(f"Scheduled sync failed: {summary.get('error')}")


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        metric_sync_job,
        "interval",
        minutes=settings.sync_interval_minutes,
        id="metric_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Metric sync every {settings.sync_interval_minutes} min")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
