"""Corruption auditor for stored call progress.

A stored maximum gain is provably impossible when it outruns everything
the token has done since the entry:

    max_possible = max(current / entry - 1, ath / entry - 1) * 100   (%)

and the stored value is corrupted if it exceeds ``max_possible`` by the
configured ratio (2.5x), exceeds the extreme-value ceiling (50,000%), or
is positive while ``max_possible`` is not.

Remediation resets the call to its entry baseline (1.0x, no milestones)
and appends an audit row.  No attempt is made to guess the true peak.
The next reconciliation rebuilds progress from market data.

Runs independently of reconciliation, on demand or on a schedule.
"""

import logging
import time
from typing import Optional

from config import settings
from models.database import get_calls_by_ids, list_calls, reset_call_progress
from models.schemas import (
    AuditResult,
    Basis,
    CallFilters,
    CallRow,
    CorruptionReport,
    TokenSnapshot,
)
from services.errors import CorruptionDetected, DataUnavailable, LockContention
from services.market_data import MarketDataGateway, fetch_snapshot, get_market_data_client
from services.token_lock import TokenLockCoordinator, get_token_lock_coordinator

logger = logging.getLogger(__name__)


def stored_max_pct(call: CallRow) -> float:
    return (call.progress.multiplier - 1.0) * 100


def audit_basis(call: CallRow) -> Basis:
    """Basis the stored multiplier was computed on."""
    return call.progress.max.basis or call.basis


def max_possible_pct(call: CallRow, snapshot: TokenSnapshot) -> Optional[float]:
    """Best gain the data can justify, or ``None`` if nothing is comparable.

    The current value is read on the stored progress's basis; the ATH is
    measured against the entry on whatever basis the provider reports it.
    """
    candidates = []
    basis = audit_basis(call)
    entry = call.entry.value_for(basis)
    current = snapshot.current_for(basis)
    if entry is not None and entry > 0 and current is not None and current > 0:
        candidates.append((current / entry - 1.0) * 100)

    if snapshot.ath is not None and snapshot.ath.value > 0:
        ath_entry = call.entry.value_for(snapshot.ath.basis)
        if ath_entry is not None and ath_entry > 0:
            candidates.append((snapshot.ath.value / ath_entry - 1.0) * 100)
    if not candidates:
        return None
    return max(candidates)


def audit(call: CallRow, snapshot: TokenSnapshot) -> AuditResult:
    """Check one call's stored maximum against what is achievable.

    Raises:
        DataUnavailable: The snapshot has nothing comparable to the call's entry.
    """
    stored = stored_max_pct(call)
    possible = max_possible_pct(call, snapshot)
    if possible is None:
        raise DataUnavailable(f"No comparable snapshot for call {call.id}")

    ratio = settings.corruption_ratio_threshold
    extreme = settings.corruption_extreme_pct

    reason = ""
    if stored <= 0:
        pass  # baseline is never corrupted
    elif stored > extreme:
        reason = f"Extreme gain detected: {stored:.2f}% (threshold: {extreme:.0f}%)"
    elif possible <= 0:
        reason = f"Logic violation: stored {stored:.2f}% when max possible is {possible:.2f}%"
    elif stored > possible * ratio:
        reason = f"Stored {stored:.2f}% exceeds possible {possible:.2f}% by {ratio}x"

    return AuditResult(
        call_id=call.id,
        token=call.token,
        corrupted=bool(reason),
        reason=reason,
        stored_max_pct=stored,
        max_possible_pct=possible,
    )


def assert_consistent(call: CallRow, snapshot: TokenSnapshot) -> AuditResult:
    """Like ``audit`` but raises ``CorruptionDetected`` on a bad record."""
    result = audit(call, snapshot)
    if result.corrupted:
        raise CorruptionDetected(call.id, result.reason, audit=result)
    return result


def remediate(call: CallRow, result: AuditResult, run_id: Optional[str] = None) -> bool:
    """Reset a corrupted call to its entry baseline, with an audit trail.

    The reset only applies while the stored multiplier is still the one
    that was audited.

    Returns:
        Whether the call was reset.
    """
    if not result.corrupted:
        return False
    reset = reset_call_progress(
        call=call,
        reason=result.reason,
        max_possible_pct=result.max_possible_pct,
        run_id=run_id,
    )
    if not reset:
        logger.info("Auditor: call %s changed since it was audited, not reset", call.id)
        return False
    logger.warning(
        "Auditor: reset call %s (%s) from %.2f%% to baseline — %s",
        call.id,
        call.token,
        result.stored_max_pct,
        result.reason,
    )
    return True


def _fix_calls(
    call_ids: list[str], snapshot: TokenSnapshot, report: CorruptionReport
) -> None:
    """Re-read and re-audit a token's flagged calls, resetting those still corrupted.

    Must run while holding the token's lock.
    """
    for call in get_calls_by_ids(call_ids):
        try:
            result = audit(call, snapshot)
        except DataUnavailable:
            continue
        if not result.corrupted:
            logger.info("Auditor: call %s no longer corrupted, skipping fix", call.id)
            continue
        try:
            if remediate(call, result):
                report.fixed += 1
        except Exception:
            logger.exception("Auditor: failed to reset call %s", call.id)
            report.failed += 1


async def run_corruption_audit(
    fix: bool = False,
    filters: Optional[CallFilters] = None,
    gateway: Optional[MarketDataGateway] = None,
    lock: Optional[TokenLockCoordinator] = None,
) -> CorruptionReport:
    """Audit every matching active call; optionally reset corrupted ones.

    One snapshot is fetched per token.  Fixes take the token lock so they
    never interleave with a reconciliation of the same token; a contended
    token counts as ``failed`` and is retried by the next sweep.
    """
    gateway = gateway or get_market_data_client()
    lock = lock or get_token_lock_coordinator()
    now = int(time.time())

    calls = list_calls(filters or CallFilters(), active_only=True)
    by_token: dict[str, list[CallRow]] = {}
    for call in calls:
        by_token.setdefault(call.token, []).append(call)

    report = CorruptionReport(total=len(calls), dry_run=not fix)
    logger.info(
        "Auditor: checking %d calls across %d tokens (%s)",
        len(calls),
        len(by_token),
        "live" if fix else "dry run",
    )

    for token, token_calls in by_token.items():
        try:
            snapshot = await fetch_snapshot(gateway, token, now)
        except DataUnavailable as exc:
            logger.info("Auditor: skipping %s — %s", token, exc)
            continue

        corrupted: list[str] = []
        for call in token_calls:
            try:
                assert_consistent(call, snapshot)
            except CorruptionDetected as exc:
                corrupted.append(call.id)
                report.corrupted.append(exc.audit)
            except DataUnavailable:
                continue

        if not fix or not corrupted:
            continue

        try:
            async with lock.hold(token):
                _fix_calls(corrupted, snapshot, report)
        except LockContention:
            logger.info("Auditor: %s locked, %d fixes deferred", token, len(corrupted))
            report.failed += len(corrupted)

    report.corrupted_count = len(report.corrupted)
    if report.total:
        report.corruption_rate = round(report.corrupted_count / report.total * 100, 2)

    logger.info(
        "Auditor: %d/%d corrupted (%.2f%%), fixed=%d failed=%d",
        report.corrupted_count,
        report.total,
        report.corruption_rate,
        report.fixed,
        report.failed,
    )
    return report
