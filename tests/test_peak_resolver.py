import asyncio

import pytest

from config import settings
from models.schemas import AthDescriptor, Basis, Candle, Entry, MarketWindow, PeakRule
from services.errors import DataUnavailable
from services.peak_resolver import (
    local_post_call_high,
    resolve_peak,
    resolve_peak_from_window,
)

CALL_TS = 1_000
NOW = 10_000
ENTRY = Entry(price=0.001, market_cap=1_000_000)


def _window(ath=None, candles=None):
    return MarketWindow(token="TOKEN", from_ts=CALL_TS, to_ts=NOW, ath=ath, candles=candles or [])


def test_ath_after_call_wins():
    window = _window(
        ath=AthDescriptor(basis=Basis.market_cap, value=2_000_000, timestamp=5_000),
        candles=[Candle(timestamp=2_000, market_cap_high=1_500_000)],
    )
    peak = resolve_peak_from_window(window, CALL_TS, Basis.market_cap, NOW, ENTRY)
    assert peak.rule == PeakRule.ath_after_call
    assert peak.value == 2_000_000
    assert peak.timestamp == 5_000
    assert peak.basis_used == Basis.market_cap


def test_ath_before_call_uses_local_high():
    window = _window(
        ath=AthDescriptor(basis=Basis.market_cap, value=9_000_000, timestamp=500),
        candles=[
            Candle(timestamp=800, market_cap_high=8_000_000),  # pre-call, ignored
            Candle(timestamp=2_000, market_cap_high=1_500_000),
            Candle(timestamp=3_000, market_cap_high=1_200_000),
        ],
    )
    peak = resolve_peak_from_window(window, CALL_TS, Basis.market_cap, NOW, ENTRY)
    assert peak.rule == PeakRule.local_high
    assert peak.value == 1_500_000
    assert peak.timestamp == 2_000


def test_undated_ath_is_not_attributed():
    window = _window(
        ath=AthDescriptor(basis=Basis.price, value=0.01, timestamp=None),
        candles=[Candle(timestamp=2_000, price_high=0.002)],
    )
    peak = resolve_peak_from_window(window, CALL_TS, Basis.price, NOW, ENTRY)
    assert peak.rule == PeakRule.local_high
    assert peak.value == 0.002


def test_ath_on_basis_entry_lacks_is_skipped():
    entry = Entry(price=None, market_cap=1_000_000)
    window = _window(
        ath=AthDescriptor(basis=Basis.price, value=0.01, timestamp=5_000),
        candles=[Candle(timestamp=2_000, market_cap_high=3_000_000)],
    )
    peak = resolve_peak_from_window(window, CALL_TS, Basis.market_cap, NOW, entry)
    assert peak.rule == PeakRule.local_high
    assert peak.basis_used == Basis.market_cap
    assert peak.value == 3_000_000


def test_no_usable_data_raises():
    window = _window(
        ath=AthDescriptor(basis=Basis.market_cap, value=2_000_000, timestamp=100),
        candles=[Candle(timestamp=200, market_cap_high=1_000)],
    )
    with pytest.raises(DataUnavailable):
        resolve_peak_from_window(window, CALL_TS, Basis.market_cap, NOW, ENTRY)


def test_local_high_falls_back_to_price_without_market_cap_samples():
    candles = [
        Candle(timestamp=2_000, price_high=0.003),
        Candle(timestamp=3_000, price_high=0.004),
    ]
    peak = local_post_call_high(candles, CALL_TS, NOW, Basis.market_cap, ENTRY)
    assert peak.basis_used == Basis.price
    assert peak.value == 0.004

    no_price_entry = Entry(price=None, market_cap=1_000_000)
    assert local_post_call_high(candles, CALL_TS, NOW, Basis.market_cap, no_price_entry) is None


def test_local_high_ignores_non_positive_values():
    candles = [
        Candle(timestamp=2_000, market_cap_high=0),
        Candle(timestamp=3_000, market_cap_high=-5),
    ]
    assert local_post_call_high(candles, CALL_TS, NOW, Basis.market_cap) is None


def test_fresh_call_guard(monkeypatch):
    window = _window(
        ath=AthDescriptor(basis=Basis.market_cap, value=2_000_000, timestamp=1_010),
        candles=[
            Candle(timestamp=1_005, market_cap_high=1_999_000),
            Candle(timestamp=1_010, market_cap_high=1_999_500),
        ],
    )
    now = 1_020

    peak = resolve_peak_from_window(window, CALL_TS, Basis.market_cap, now, ENTRY)
    assert peak.rule == PeakRule.ath_after_call

    monkeypatch.setattr(settings, "fresh_call_guard_enabled", True)
    peak = resolve_peak_from_window(window, CALL_TS, Basis.market_cap, now, ENTRY)
    assert peak.rule == PeakRule.local_high
    assert peak.value == 1_999_500


def test_resolve_peak_fetches_window(gateway):
    gateway.aths["TOKEN"] = AthDescriptor(basis=Basis.market_cap, value=4_000_000, timestamp=6_000)
    gateway.candles["TOKEN"] = [Candle(timestamp=2_000, market_cap_high=1_500_000)]

    peak = asyncio.run(resolve_peak(gateway, "TOKEN", CALL_TS, Basis.market_cap, NOW, ENTRY))
    assert peak.value == 4_000_000
    assert gateway.ath_calls["TOKEN"] == 1
