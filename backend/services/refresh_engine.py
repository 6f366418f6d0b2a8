"""Refresh orchestrator — groups calls by token and drives reconciliation.

Each sweep:
  1. Load active calls and group them by token.
  2. Per token (bounded parallelism): take the token lock, re-read the
     calls, fetch one market window, reconcile every call in order.
  3. Persist improvements and report per-call counts.

One call's failure never stops the rest of its token group, and one
token's failure never stops the sweep.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from config import settings
from models.database import get_active_calls, get_call, get_calls_by_ids
from models.schemas import (
    CallFilters,
    CallRow,
    MarketWindow,
    ReconcileResult,
    RefreshStatusResponse,
    SkipReason,
    SweepSummary,
)
from services.errors import DataUnavailable, LockContention, ValidationError
from services.market_data import MarketDataGateway, fetch_window, get_market_data_client
from services.reconciler import persist_result, reconcile
from services.refresh_progress import (
    complete_refresh,
    fail_refresh,
    get_last_refresh_summary,
    get_progress,
    is_refreshing,
    last_refresh_at,
    save_refresh_summary,
    set_tokens_total,
    start_refresh,
    token_done,
    token_processing,
)
from services.scheduler import get_next_refresh_time
from services.token_lock import TokenLockCoordinator, get_token_lock_coordinator

logger = logging.getLogger(__name__)

SKIP_REASONS = {r.value for r in SkipReason if r != SkipReason.validation_failed}


def _outcome(call: CallRow, reason: str, note: Optional[str] = None) -> ReconcileResult:
    return ReconcileResult(
        call_id=call.id,
        token=call.token,
        updated=False,
        reason=reason,
        previous_multiplier=call.progress.multiplier,
        audit_note=note,
    )


def group_by_token(calls: list[CallRow]) -> dict[str, list[CallRow]]:
    groups: dict[str, list[CallRow]] = {}
    for call in calls:
        groups.setdefault(call.token, []).append(call)
    return groups


def _reconcile_one(
    call: CallRow,
    window: MarketWindow,
    now: int,
    dry_run: bool,
    run_id: Optional[str],
) -> ReconcileResult:
    try:
        result = reconcile(call, window, now)
    except ValidationError as exc:
        logger.warning("Refresh: invalid call %s — %s", call.id, exc)
        return _outcome(call, SkipReason.validation_failed.value, str(exc))
    except DataUnavailable as exc:
        return _outcome(call, SkipReason.data_unavailable.value, str(exc))
    except Exception as exc:
        logger.exception("Refresh: error reconciling call %s", call.id)
        return _outcome(call, "error", str(exc))

    if not result.updated or dry_run:
        return result

    try:
        written = persist_result(result, run_id=run_id)
    except Exception as exc:
        logger.exception("Refresh: failed to persist call %s", call.id)
        return _outcome(call, "error", str(exc))
    if not written:
        return _outcome(call, SkipReason.no_improvement.value, "Higher multiplier already stored")

    logger.info("Refresh: call %s %s", call.id, result.audit_note)
    return result


async def reconcile_token_group(
    token: str,
    calls: list[CallRow],
    now: int,
    gateway: MarketDataGateway,
    lock: TokenLockCoordinator,
    dry_run: bool = False,
    run_id: Optional[str] = None,
) -> list[ReconcileResult]:
    """Reconcile every call of one token inside a single locked section."""
    try:
        async with lock.hold(token):
            # Re-read under the lock so the improvement check sees the latest state
            fresh = {c.id: c for c in get_calls_by_ids([c.id for c in calls])}
            calls = [fresh.get(c.id, c) for c in calls]

            from_ts = min(c.call_ts for c in calls)
            try:
                window = await fetch_window(gateway, token, from_ts, now)
            except DataUnavailable as exc:
                logger.info("Refresh: deferring %s — %s", token, exc)
                return [
                    _outcome(c, SkipReason.data_unavailable.value, str(exc)) for c in calls
                ]

            return [_reconcile_one(c, window, now, dry_run, run_id) for c in calls]
    except LockContention:
        logger.info("Refresh: %s is locked, skipping %d calls this cycle", token, len(calls))
        return [_outcome(c, SkipReason.lock_contention.value) for c in calls]


def summarize(results: list[ReconcileResult]) -> SweepSummary:
    summary = SweepSummary(processed=len(results), results=results)
    for result in results:
        if result.updated:
            summary.updated += 1
        elif result.reason in SKIP_REASONS:
            summary.skipped += 1
        else:
            summary.errors += 1
    return summary


async def reconcile_calls(
    calls: list[CallRow],
    gateway: Optional[MarketDataGateway] = None,
    lock: Optional[TokenLockCoordinator] = None,
    now: Optional[int] = None,
    dry_run: bool = False,
    run_id: Optional[str] = None,
    track_progress: bool = False,
) -> list[ReconcileResult]:
    """Reconcile a set of calls, one locked group per token, tokens in parallel."""
    gateway = gateway or get_market_data_client()
    lock = lock or get_token_lock_coordinator()
    now = now if now is not None else int(time.time())

    groups = group_by_token(calls)
    semaphore = asyncio.Semaphore(max(1, settings.refresh_concurrency))
    if track_progress:
        set_tokens_total(len(groups))

    async def _run(token: str, token_calls: list[CallRow]) -> list[ReconcileResult]:
        async with semaphore:
            if track_progress:
                token_processing(token)
            try:
                return await reconcile_token_group(
                    token, token_calls, now, gateway, lock, dry_run=dry_run, run_id=run_id
                )
            except Exception as exc:
                logger.exception("Refresh: error processing token %s", token)
                return [_outcome(c, "error", str(exc)) for c in token_calls]
            finally:
                if track_progress:
                    token_done()

    grouped = await asyncio.gather(*(_run(t, c) for t, c in groups.items()))
    return [result for group in grouped for result in group]


async def refresh_all_calls(
    gateway: Optional[MarketDataGateway] = None,
    lock: Optional[TokenLockCoordinator] = None,
) -> SweepSummary:
    """Sweep every active call.  A sweep already in flight makes this a no-op."""
    if is_refreshing():
        logger.info("Refresh: sweep already in progress, skipping")
        return SweepSummary(status="already-running")

    start_refresh()
    try:
        calls = get_active_calls()
        if not calls:
            logger.info("Refresh: no active calls")
            summary = SweepSummary()
        else:
            logger.info("Refresh: sweeping %d active calls", len(calls))
            results = await reconcile_calls(calls, gateway, lock, track_progress=True)
            summary = summarize(results)
    except Exception as exc:
        logger.exception("Refresh: sweep failed")
        fail_refresh(str(exc))
        raise

    complete_refresh()
    save_refresh_summary(summary.model_dump(exclude={"results"}))
    logger.info(
        "Refresh: sweep done — processed=%d updated=%d skipped=%d errors=%d",
        summary.processed,
        summary.updated,
        summary.skipped,
        summary.errors,
    )
    return summary


async def refresh_call(
    call_id: str,
    gateway: Optional[MarketDataGateway] = None,
    lock: Optional[TokenLockCoordinator] = None,
) -> Optional[ReconcileResult]:
    """Refresh one call on demand.  Returns ``None`` if the call does not exist."""
    call = get_call(call_id)
    if call is None:
        return None
    results = await reconcile_calls([call], gateway, lock)
    return results[0]


async def refresh_tokens(
    tokens: list[str],
    gateway: Optional[MarketDataGateway] = None,
    lock: Optional[TokenLockCoordinator] = None,
) -> SweepSummary:
    """Refresh every active call on the given tokens."""
    calls = get_active_calls(CallFilters(tokens=tokens))
    if not calls:
        logger.info("Refresh: no active calls for %d requested tokens", len(tokens))
        return SweepSummary()
    return summarize(await reconcile_calls(calls, gateway, lock))


def get_refresh_status() -> RefreshStatusResponse:
    """Current sweep state, last/next sweep time and the last sweep's counts."""
    next_run = get_next_refresh_time()
    next_in = None
    if next_run is not None:
        next_in = max(0.0, (next_run - datetime.now(timezone.utc)).total_seconds())

    progress = get_progress()
    return RefreshStatusResponse(
        is_refreshing=is_refreshing(),
        tokens_total=progress["tokens_total"],
        tokens_processed=progress["tokens_processed"],
        current_token=progress["current_token"],
        error=progress["error"],
        last_refresh_at=last_refresh_at(),
        next_refresh_in_seconds=next_in,
        last_summary=get_last_refresh_summary(),
    )
