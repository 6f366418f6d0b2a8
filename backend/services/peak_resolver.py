"""Decide the authoritative post-call peak for a call.

An ATH only counts for a call if it happened at or after the call.  An
ATH that predates the call (or that the provider cannot date) is not
attributable to the caller, so the highest candle observed after the
call is used instead.

Pure given a ``MarketWindow``; ``resolve_peak`` is the fetching wrapper.
"""

import logging
from typing import Optional

from config import settings
from models.schemas import (
    AthDescriptor,
    Basis,
    Candle,
    Entry,
    MarketWindow,
    PeakRule,
    ResolvedPeak,
)
from services.errors import DataUnavailable
from services.market_data import MarketDataGateway, fetch_window

logger = logging.getLogger(__name__)


def _usable(value: Optional[float]) -> bool:
    return value is not None and value > 0 and value != float("inf")


def _max_on(candles: list[Candle], basis: Basis) -> Optional[tuple[float, int]]:
    best: Optional[tuple[float, int]] = None
    for candle in candles:
        value = candle.value_for(basis)
        if _usable(value) and (best is None or value > best[0]):
            best = (value, candle.timestamp)
    return best


def local_post_call_high(
    candles: list[Candle],
    call_ts: int,
    to_ts: int,
    basis: Basis,
    entry: Optional[Entry] = None,
) -> Optional[ResolvedPeak]:
    """Highest candle in ``[call_ts, to_ts]`` on the call's basis.

    A market-cap call falls back to price highs only when the window holds
    no market-cap sample at all (and the entry has a price to compare to).
    """
    window = [c for c in candles if call_ts <= c.timestamp <= to_ts]

    best = _max_on(window, basis)
    basis_used = basis
    if best is None and basis == Basis.market_cap:
        if entry is None or _usable(entry.price):
            best = _max_on(window, Basis.price)
            basis_used = Basis.price
    if best is None:
        return None
    return ResolvedPeak(
        value=best[0], timestamp=best[1], basis_used=basis_used, rule=PeakRule.local_high
    )


def _ath_applies(
    ath: Optional[AthDescriptor],
    call_ts: int,
    entry: Optional[Entry],
) -> bool:
    if ath is None or ath.timestamp is None or not _usable(ath.value):
        return False
    if ath.timestamp < call_ts:
        return False
    # The ATH must be comparable against the entry snapshot
    if entry is not None and not _usable(entry.value_for(ath.basis)):
        return False
    return True


def _fresh_near_ath(
    window: MarketWindow,
    call_ts: int,
    now: int,
) -> bool:
    """Very young call while the token trades within tolerance of its ATH."""
    if not settings.fresh_call_guard_enabled or window.ath is None:
        return False
    if now - call_ts >= settings.fresh_call_window_seconds:
        return False
    if not window.candles:
        return False
    current = window.candles[-1].value_for(window.ath.basis)
    if not _usable(current):
        return False
    return abs(current - window.ath.value) / window.ath.value < settings.fresh_call_ath_tolerance


def resolve_peak_from_window(
    window: MarketWindow,
    call_ts: int,
    basis: Basis,
    now: int,
    entry: Optional[Entry] = None,
) -> ResolvedPeak:
    """Choose between the ATH and the local post-call high.

    Raises:
        DataUnavailable: Neither the ATH nor any candle in the window gives
            a finite positive value.
    """
    ath = window.ath
    if _ath_applies(ath, call_ts, entry) and not _fresh_near_ath(window, call_ts, now):
        return ResolvedPeak(
            value=ath.value,
            timestamp=ath.timestamp,
            basis_used=ath.basis,
            rule=PeakRule.ath_after_call,
        )

    local = local_post_call_high(window.candles, call_ts, max(now, window.to_ts), basis, entry)
    if local is None:
        raise DataUnavailable(
            f"No post-call high for {window.token} since {call_ts}"
        )
    return local


async def resolve_peak(
    gateway: MarketDataGateway,
    token: str,
    call_ts: int,
    basis: Basis,
    now: int,
    entry: Optional[Entry] = None,
) -> ResolvedPeak:
    """Fetch market data for one call and resolve its peak."""
    window = await fetch_window(gateway, token, call_ts, now)
    peak = resolve_peak_from_window(window, call_ts, basis, now, entry)
    logger.debug(
        "Resolver: %s peak %.6g (%s) at %d via %s",
        token,
        peak.value,
        peak.basis_used.value,
        peak.timestamp,
        peak.rule.value,
    )
    return peak
