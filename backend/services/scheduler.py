"""APScheduler configuration for periodic reconciliation.

Defines recurring jobs:
  - ``refresh_sweep``: reconciles every active call, every
    ``refresh_interval_seconds``.
  - ``corruption_audit``: audits stored progress against market data and
    optionally resets corrupted calls (disabled by default).

Uses deferred imports inside job functions to avoid circular imports
between the scheduler and the refresh engine.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def run_refresh_sweep() -> None:
    """Reconcile all active calls.

    Catches and logs all exceptions so that one failed run does not
    crash the scheduler.
    """
    try:
        # Deferred import to avoid circular dependency
        from services.refresh_engine import refresh_all_calls
        from services.refresh_progress import reset_stale_refresh

        if reset_stale_refresh():
            logger.warning("Scheduler: cleared a stale refresh sweep")

        summary = await refresh_all_calls()
        if summary.status == "already-running":
            return
        logger.info(
            "Scheduler: refresh sweep completed — processed=%d updated=%d skipped=%d errors=%d",
            summary.processed,
            summary.updated,
            summary.skipped,
            summary.errors,
        )
    except Exception:
        logger.exception("Scheduler: refresh sweep failed")


async def run_corruption_audit_job() -> None:
    """Audit stored progress; fixes only when auto-fix is enabled."""
    logger.info("Scheduler: starting corruption audit")
    try:
        from services.auditor import run_corruption_audit

        report = await run_corruption_audit(fix=settings.corruption_auto_fix)
        logger.info(
            "Scheduler: corruption audit completed — corrupted=%d/%d fixed=%d failed=%d",
            report.corrupted_count,
            report.total,
            report.fixed,
            report.failed,
        )
    except Exception:
        logger.exception("Scheduler: corruption audit failed")


def get_next_refresh_time() -> Optional[datetime]:
    """Return the next scheduled refresh sweep time (UTC)."""
    job = scheduler.get_job("refresh_sweep")
    if job and job.next_run_time:
        return job.next_run_time.astimezone(timezone.utc)
    return None


def configure_scheduler() -> None:
    """Add the recurring jobs to the scheduler.

    Call this once during application startup (before ``scheduler.start()``).
    """
    if settings.refresh_enabled:
        scheduler.add_job(
            run_refresh_sweep,
            trigger=IntervalTrigger(seconds=settings.refresh_interval_seconds),
            id="refresh_sweep",
            name="Refresh sweep",
            replace_existing=True,
            max_instances=1,
        )

    if settings.corruption_audit_enabled:
        scheduler.add_job(
            run_corruption_audit_job,
            trigger=IntervalTrigger(hours=settings.corruption_audit_interval_hours),
            id="corruption_audit",
            name="Corruption audit",
            replace_existing=True,
            max_instances=1,
        )

    logger.info(
        "Scheduler: configured — refresh %s, corruption audit %s",
        f"every {settings.refresh_interval_seconds}s"
        if settings.refresh_enabled
        else "disabled",
        f"every {settings.corruption_audit_interval_hours}h"
        f"{' (auto-fix)' if settings.corruption_auto_fix else ''}"
        if settings.corruption_audit_enabled
        else "disabled",
    )
