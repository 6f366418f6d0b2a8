"""Milestone first-cross detection and write-once locking.

A milestone (2x, 5x, ... 100x) locks at the timestamp of the first
candle whose high reaches it, never at the series' global maximum.
Once a milestone is hit it is never re-evaluated.
"""

import logging
from typing import Iterable, Optional

from models.schemas import (
    MILESTONE_THRESHOLDS,
    Basis,
    Candle,
    Milestone,
    MilestoneProgressEntry,
    NextMilestone,
    empty_milestones,
    milestone_key,
)
from services.market_data import MarketDataGateway

logger = logging.getLogger(__name__)


def pending_thresholds(
    milestones: Optional[dict[str, Milestone]],
    thresholds: Iterable[int] = MILESTONE_THRESHOLDS,
) -> list[int]:
    """Thresholds not yet hit, ascending."""
    milestones = milestones or {}
    return sorted(
        t for t in thresholds
        if not milestones.get(milestone_key(t), Milestone()).hit
    )


def find_first_crosses(
    candles: list[Candle],
    call_ts: int,
    entry_value: float,
    basis: Basis,
    thresholds: Iterable[int] = MILESTONE_THRESHOLDS,
    to_ts: Optional[int] = None,
) -> dict[int, int]:
    """Walk candles forward and record each threshold's first crossing.

    Pre-call candles are ignored, as are candles after ``to_ts``.  Several
    thresholds crossed inside one candle all take that candle's timestamp.

    Returns:
        ``{threshold: first_cross_ts}`` for every threshold reached.
    """
    if entry_value is None or entry_value <= 0:
        return {}

    pending = sorted(thresholds)
    first_hit: dict[int, int] = {}

    for candle in sorted(candles, key=lambda c: c.timestamp):
        if not pending:
            break
        if candle.timestamp < call_ts:
            continue
        if to_ts is not None and candle.timestamp > to_ts:
            break

        value = candle.value_for(basis)
        if value is None or value <= 0:
            continue

        multiplier = value / entry_value
        while pending and pending[0] <= multiplier:
            first_hit[pending.pop(0)] = candle.timestamp

    return first_hit


async def scan_milestones(
    gateway: MarketDataGateway,
    token: str,
    call_ts: int,
    entry_value: float,
    basis: Basis,
    to_ts: int,
    thresholds: Iterable[int] = MILESTONE_THRESHOLDS,
    existing: Optional[dict[str, Milestone]] = None,
) -> dict[int, int]:
    """Fetch the call's series and propose new hits for unhit thresholds."""
    pending = pending_thresholds(existing, thresholds)
    if not pending:
        return {}
    candles = await gateway.get_time_series(token, call_ts, to_ts, basis)
    hits = find_first_crosses(candles, call_ts, entry_value, basis, pending, to_ts)
    logger.debug("Milestones: %s proposed %s", token, sorted(hits))
    return hits


def merge_milestones(
    existing: Optional[dict[str, Milestone]],
    first_hits: dict[int, int],
) -> tuple[dict[str, Milestone], dict[str, Milestone]]:
    """Apply proposed hits without touching anything already hit.

    Returns:
        ``(merged, newly_hit)``.
    """
    merged = empty_milestones()
    for key, milestone in (existing or {}).items():
        merged[key] = milestone.model_copy()

    newly_hit: dict[str, Milestone] = {}
    for threshold, ts in sorted(first_hits.items()):
        key = milestone_key(threshold)
        if merged.get(key, Milestone()).hit:
            continue
        merged[key] = Milestone(hit=True, timestamp=ts)
        newly_hit[key] = merged[key]
    return merged, newly_hit


def display_name(threshold: int) -> str:
    return f"{threshold}x"


def milestone_progress(multiplier: float) -> dict[str, MilestoneProgressEntry]:
    return {
        milestone_key(t): MilestoneProgressEntry(
            threshold=t,
            crossed=multiplier >= t,
            progress=min(100.0, multiplier / t * 100),
        )
        for t in MILESTONE_THRESHOLDS
    }


def next_milestone(multiplier: float) -> Optional[NextMilestone]:
    """The lowest threshold not yet reached, or ``None`` past 100x."""
    for t in MILESTONE_THRESHOLDS:
        if multiplier < t:
            return NextMilestone(
                threshold=t,
                display=display_name(t),
                remaining=t - multiplier,
                progress=multiplier / t * 100,
            )
    return None


def validate_milestones(milestones: dict[str, Milestone]) -> list[str]:
    """Return a list of problems (empty when the map is well formed)."""
    errors: list[str] = []
    for t in MILESTONE_THRESHOLDS:
        key = milestone_key(t)
        milestone = milestones.get(key)
        if milestone is None:
            errors.append(f"Missing milestone: {key}")
            continue
        if milestone.hit and not milestone.timestamp:
            errors.append(f"Missing or invalid timestamp for {key}")
        if not milestone.hit and milestone.timestamp:
            errors.append(f"Timestamp set for unlocked milestone {key}")
    unknown = set(milestones) - {milestone_key(t) for t in MILESTONE_THRESHOLDS}
    for key in sorted(unknown):
        errors.append(f"Unknown milestone: {key}")
    return errors
