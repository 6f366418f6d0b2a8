"""Administrative backfill: paginated re-evaluation of historical calls.

A run walks the calls matching its filters in ``call_ts`` order, one page
per invocation.  The cursor is the offset of the next page; callers pause
between pages simply by not asking for the next one.  Dry runs compute
results but persist neither call progress nor the run record.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config import settings
from models.database import (
    delete_backfill_runs_before,
    get_backfill_run,
    insert_backfill_run,
    list_backfill_runs,
    list_calls,
    update_backfill_run,
)
from models.schemas import BackfillRun, CallFilters, RunStatus
from services.errors import ValidationError
from services.market_data import MarketDataGateway
from services.refresh_engine import reconcile_calls, summarize
from services.token_lock import TokenLockCoordinator

logger = logging.getLogger(__name__)

RUN_COUNTS = ("scanned", "updated", "skipped", "errors")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id(now: Optional[datetime] = None) -> str:
    return (now or _now()).strftime("%Y%m%d-%H%M%S")


def _parse_cursor(cursor: Optional[str]) -> int:
    if cursor in (None, ""):
        return 0
    try:
        offset = int(cursor)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid cursor {cursor!r}")
    if offset < 0:
        raise ValidationError(f"Invalid cursor {cursor!r}")
    return offset


def _validate(filters: CallFilters, limit: int) -> None:
    if limit <= 0:
        raise ValidationError("limit must be positive")
    if limit > settings.backfill_max_limit:
        raise ValidationError(f"limit cannot exceed {settings.backfill_max_limit}")
    if (
        filters.from_ts is not None
        and filters.to_ts is not None
        and filters.from_ts > filters.to_ts
    ):
        raise ValidationError("from_ts must be before to_ts")


async def run_backfill(
    filters: Optional[CallFilters] = None,
    limit: Optional[int] = None,
    dry_run: bool = False,
    run_id: Optional[str] = None,
    cursor: Optional[str] = None,
    gateway: Optional[MarketDataGateway] = None,
    lock: Optional[TokenLockCoordinator] = None,
) -> BackfillRun:
    """Process one page of a backfill run and return the updated run summary.

    Passing an existing ``run_id`` resumes it; its stored filters and cursor
    are used unless a cursor is given explicitly.

    Raises:
        ValidationError: Bad limit, time range or cursor, or the run is
            already completed.
    """
    filters = filters or CallFilters()
    limit = limit if limit is not None else settings.backfill_default_limit
    _validate(filters, limit)
    _parse_cursor(cursor)

    existing = get_backfill_run(run_id) if run_id and not dry_run else None
    if existing is not None:
        if existing.status == RunStatus.completed:
            raise ValidationError(f"Run {run_id} is already completed")
        filters = existing.filters
        if cursor is None:
            cursor = existing.next_cursor
        run = existing
        run.limit = limit
    else:
        run = BackfillRun(
            run_id=run_id or new_run_id(),
            filters=filters,
            limit=limit,
            dry_run=dry_run,
            started_at=_now(),
        )
        if not dry_run:
            insert_backfill_run(run)

    offset = _parse_cursor(cursor)
    run.cursor = str(offset)
    run.status = RunStatus.running
    logger.info(
        "Backfill: run %s page at offset %d (limit=%d%s)",
        run.run_id,
        offset,
        limit,
        ", dry run" if dry_run else "",
    )

    try:
        # One extra row tells us whether another page exists
        page = list_calls(filters, active_only=False, offset=offset, limit=limit + 1)
        has_more = len(page) > limit
        page = page[:limit]

        results = await reconcile_calls(
            page, gateway, lock, now=int(time.time()), dry_run=dry_run, run_id=run.run_id
        )
        summary = summarize(results)
    except Exception as exc:
        logger.exception("Backfill: run %s failed", run.run_id)
        run.status = RunStatus.failed
        run.error = str(exc)
        run.updated_at = _now()
        if not dry_run:
            update_backfill_run(run)
        raise

    run.scanned += len(page)
    run.updated += summary.updated
    run.skipped += summary.skipped
    run.errors += summary.errors
    run.total = offset + len(page) + (1 if has_more else 0)
    run.has_more = has_more
    run.next_cursor = str(offset + len(page)) if has_more else None
    run.updated_at = _now()
    if has_more:
        run.status = RunStatus.in_progress
    else:
        run.status = RunStatus.completed
        run.completed_at = run.updated_at

    if not dry_run:
        update_backfill_run(run)

    logger.info(
        "Backfill: run %s %s — scanned=%d updated=%d skipped=%d errors=%d",
        run.run_id,
        run.status.value,
        run.scanned,
        run.updated,
        run.skipped,
        run.errors,
    )
    return run


async def run_backfill_pages(
    filters: Optional[CallFilters] = None,
    limit: Optional[int] = None,
    dry_run: bool = False,
    run_id: Optional[str] = None,
    max_pages: Optional[int] = None,
    on_page: Optional[Callable[[int, BackfillRun], None]] = None,
    gateway: Optional[MarketDataGateway] = None,
    lock: Optional[TokenLockCoordinator] = None,
) -> BackfillRun:
    """Run pages until the run completes or ``max_pages`` is reached.

    Returns the last page's run with counts covering every page walked.
    Stored runs already carry running totals; dry-run pages are summed here.
    """
    totals = dict.fromkeys(RUN_COUNTS, 0)
    cursor = None
    pages = 0
    while True:
        run = await run_backfill(
            filters=filters,
            limit=limit,
            dry_run=dry_run,
            run_id=run_id,
            cursor=cursor,
            gateway=gateway,
            lock=lock,
        )
        pages += 1
        run_id = run.run_id
        for key in RUN_COUNTS:
            totals[key] = (totals[key] + getattr(run, key)) if dry_run else getattr(run, key)
        if on_page is not None:
            on_page(pages, run)

        if not run.has_more or (max_pages is not None and pages >= max_pages):
            break
        # Dry runs are not stored, so carry the cursor ourselves
        cursor = run.next_cursor if dry_run else None

    return run.model_copy(update=totals)


def get_run_status(run_id: str) -> Optional[BackfillRun]:
    return get_backfill_run(run_id)


def list_runs(limit: int = 50) -> list[BackfillRun]:
    return list_backfill_runs(limit)


def cleanup_old_runs(older_than_days: Optional[int] = None) -> int:
    """Delete run records started more than ``older_than_days`` ago."""
    days = older_than_days if older_than_days is not None else settings.backfill_run_retention_days
    if days < 0:
        raise ValidationError("older_than_days must not be negative")
    deleted = delete_backfill_runs_before(_now() - timedelta(days=days))
    logger.info("Backfill: deleted %d runs older than %d days", deleted, days)
    return deleted
