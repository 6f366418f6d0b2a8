"""Progress reconciliation: turn a resolved peak into a monotonic update.

Steps for one call:
  1. Skip calls without a positive entry value on their basis.
  2. Resolve the post-call peak (ATH-after-call or local high).
  3. Skip unless the new multiplier beats the stored one.
  4. Scan candles for first crossings of every unhit milestone.
  5. Emit a persistence-ready delta plus an audit note.

``reconcile`` is synchronous and side-effect free given a
``MarketWindow``; ``persist_result`` is the only writer of a call's
progress and milestones outside the corruption fix.
"""

import logging
import math
from typing import Optional

from models.database import update_call_progress
from models.schemas import (
    CallRow,
    MarketWindow,
    Milestone,
    ProgressMax,
    Basis,
    ReconcileResult,
    SkipReason,
)
from services.errors import DataUnavailable, ValidationError
from services.market_data import MarketDataGateway, fetch_window
from services.milestones import (
    find_first_crosses,
    merge_milestones,
    pending_thresholds,
    validate_milestones,
)
from services.peak_resolver import resolve_peak_from_window

logger = logging.getLogger(__name__)


def entry_basis_value(call: CallRow) -> Optional[float]:
    value = call.entry.value_for(call.basis)
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    return value


def validate_call(call: CallRow) -> None:
    """Reject calls whose stored state cannot be reasoned about.

    Raises:
        ValidationError: With every problem found.
    """
    problems: list[str] = []
    if call.call_ts <= 0:
        problems.append(f"invalid call timestamp {call.call_ts}")
    multiplier = call.progress.multiplier
    if not math.isfinite(multiplier) or multiplier <= 0:
        problems.append(f"invalid stored multiplier {multiplier}")
    problems.extend(validate_milestones(call.milestones))
    if problems:
        raise ValidationError(f"Call {call.id}: " + "; ".join(problems))


def _skip(call: CallRow, reason: SkipReason, note: Optional[str] = None) -> ReconcileResult:
    return ReconcileResult(
        call_id=call.id,
        token=call.token,
        updated=False,
        reason=reason.value,
        previous_multiplier=call.progress.multiplier,
        audit_note=note,
    )


def reconcile(call: CallRow, window: MarketWindow, now: int) -> ReconcileResult:
    """Compute the update for one call against a token's market window.

    Raises:
        ValidationError: The call's own data is malformed.
        DataUnavailable: The window yields no usable peak.
    """
    if entry_basis_value(call) is None:
        return _skip(call, SkipReason.no_entry_basis, "No valid entry basis value")

    validate_call(call)

    peak = resolve_peak_from_window(window, call.call_ts, call.basis, now, call.entry)

    basis_entry = call.entry.value_for(peak.basis_used)
    if basis_entry is None or basis_entry <= 0:
        # Resolver only returns bases the entry can be compared on
        raise DataUnavailable(
            f"Peak for {call.token} on {peak.basis_used.value} has no entry to compare"
        )

    current = call.progress.multiplier
    new_multiplier = peak.value / basis_entry
    if new_multiplier <= current:
        return _skip(
            call,
            SkipReason.no_improvement,
            f"Current: {current:.4f}x, New: {new_multiplier:.4f}x",
        )

    scan_to = max(peak.timestamp, now)
    pending = pending_thresholds(call.milestones)
    hits = find_first_crosses(
        window.candles, call.call_ts, basis_entry, peak.basis_used, pending, scan_to
    )
    hits = {t: ts for t, ts in hits.items() if t <= new_multiplier}
    # The ATH can exceed every sampled candle high; the peak itself is then
    # the only known crossing time.
    for threshold in pending:
        if threshold <= new_multiplier and threshold not in hits:
            hits[threshold] = peak.timestamp

    _, newly_hit = merge_milestones(call.milestones, hits)

    previous_max = call.progress.max
    new_max = ProgressMax(
        price=peak.value if peak.basis_used == Basis.price else previous_max.price,
        market_cap=peak.value if peak.basis_used == Basis.market_cap else previous_max.market_cap,
        timestamp=peak.timestamp,
        basis=peak.basis_used,
    )

    note = (
        f"{peak.rule.value}: basis {peak.basis_used.value}, "
        f"multiplier {current:.4f}x → {new_multiplier:.4f}x"
    )
    if newly_hit:
        note += f", milestones {', '.join(newly_hit)}"

    return ReconcileResult(
        call_id=call.id,
        token=call.token,
        updated=True,
        reason="updated",
        rule=peak.rule,
        previous_multiplier=current,
        new_multiplier=new_multiplier,
        new_max=new_max,
        new_milestones=newly_hit,
        audit_note=note,
    )


def apply_result(call: CallRow, result: ReconcileResult) -> CallRow:
    """Apply a result to an in-memory call.  Applying twice is a no-op."""
    if not result.updated or result.new_multiplier is None:
        return call
    if result.new_multiplier <= call.progress.multiplier:
        return call

    milestones = {k: m.model_copy() for k, m in call.milestones.items()}
    for key, milestone in result.new_milestones.items():
        if not milestones.get(key, Milestone()).hit:
            milestones[key] = milestone.model_copy()

    progress = call.progress.model_copy(
        update={"max": result.new_max, "multiplier": result.new_multiplier}
    )
    return call.model_copy(update={"progress": progress, "milestones": milestones})


def persist_result(result: ReconcileResult, run_id: Optional[str] = None) -> bool:
    """Write an update to the call store.

    Returns:
        ``True`` if the store accepted the write (``False`` when a higher
        multiplier was already stored).
    """
    if not result.updated:
        return False
    written = update_call_progress(
        call_id=result.call_id,
        max_=result.new_max,
        multiplier=result.new_multiplier,
        milestones=result.new_milestones,
        audit_note=result.audit_note,
        rule=result.rule.value if result.rule else None,
        previous_multiplier=result.previous_multiplier,
        run_id=run_id,
    )
    if not written:
        logger.info(
            "Reconciler: stale write for call %s ignored (%.4fx)",
            result.call_id,
            result.new_multiplier,
        )
    return written


async def reconcile_call(
    call: CallRow,
    now: int,
    gateway: MarketDataGateway,
) -> ReconcileResult:
    """Fetch a window for a single call and reconcile it.

    Market data failures become a ``data-unavailable`` skip.
    """
    if entry_basis_value(call) is None:
        return _skip(call, SkipReason.no_entry_basis, "No valid entry basis value")
    try:
        window = await fetch_window(gateway, call.token, call.call_ts, now)
        return reconcile(call, window, now)
    except DataUnavailable as exc:
        logger.info("Reconciler: deferring call %s — %s", call.id, exc)
        return _skip(call, SkipReason.data_unavailable, str(exc))

