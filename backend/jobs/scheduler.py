"""APScheduler setup for background job-history maintenance."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.date import DateTrigger

from config import settings

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def reconcile_job_history_job(engine) -> int:
    """Mark ``running`` records with no live job behind them as failed.

    Records end up orphaned when the process dies mid-run; the registry is
    empty after a restart but the durable records still say ``running``.
    """
    try:
        count = await engine.store.mark_orphaned_failed(engine.registry.running_ids())
    except Exception as e:
        logger.error(f"Job history reconciliation failed: {e}")
        raise

    if count:
        logger.info(f"Reconciliation: {count} orphaned job(s) marked failed")
    else:
        logger.debug("Reconciliation: no orphaned jobs")
    return count


async def start_scheduler(engine):
    """Initialize and start the scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler()

    interval = settings.reconcile_interval_minutes

    scheduler.add_job(
        reconcile_job_history_job,
        IntervalTrigger(minutes=interval),
        args=[engine],
        id="reconcile_job_history",
        name="Fail orphaned running jobs",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started with {interval} minute reconciliation interval")

    # First pass shortly after startup so records orphaned by the last
    # shutdown are closed without waiting a full interval
    scheduler.add_job(
        reconcile_job_history_job,
        DateTrigger(run_date=datetime.now() + timedelta(seconds=5)),
        args=[engine],
        id="initial_reconcile_job_history",
        name="Initial job history reconciliation",
        replace_existing=True,
    )


async def stop_scheduler():
    """Stop the scheduler."""
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Scheduler stopped")
