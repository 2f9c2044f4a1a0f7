"""
Periodic maintenance jobs.

1. Rate-limit purge - drop expired limiter windows
2. Status reconciliation - compare live bots with their deployments

Uses APScheduler's AsyncIOScheduler in the server's event loop.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from botfleet.config import Settings, settings as default_settings
from botfleet.services.bot_manager import BotManager
from botfleet.services.governor import Governor

logger = logging.getLogger(__name__)


async def run_rate_limit_purge(governor: Governor) -> int:
    removed = governor.purge()
    logger.debug(f"Rate-limit purge removed {removed} window(s)")
    return removed


async def run_reconciliation(manager: BotManager) -> int:
    """Ask the backend about every live bot and flag deployments that died."""
    logger.info("Starting status reconciliation...")
    try:
        drifted = await manager.reconcile()
    except Exception:
        logger.exception("Status reconciliation failed")
        return 0
    if drifted:
        logger.warning(f"Reconciliation found {drifted} bot(s) whose deployment failed")
    else:
        logger.info("Reconciliation complete: no drift")
    return drifted


def setup_scheduler(
    governor: Governor,
    manager: BotManager,
    cfg: Settings = default_settings,
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_rate_limit_purge,
        trigger=IntervalTrigger(seconds=cfg.rate_limit_purge_interval_seconds),
        args=[governor],
        id="rate_limit_purge",
        name="Rate-limit window purge",
        replace_existing=True,
    )

    scheduler.add_job(
        run_reconciliation,
        trigger=IntervalTrigger(seconds=cfg.reconcile_interval_seconds),
        args=[manager],
        id="status_reconciliation",
        name="Bot status reconciliation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(
        f"Scheduler configured: purge every {cfg.rate_limit_purge_interval_seconds}s, "
        f"reconciliation every {cfg.reconcile_interval_seconds}s"
    )
    return scheduler


def start_scheduler(scheduler: AsyncIOScheduler) -> None:
    if not scheduler.running:
        scheduler.start()
        logger.info("Maintenance scheduler started")


def stop_scheduler(scheduler: AsyncIOScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")
