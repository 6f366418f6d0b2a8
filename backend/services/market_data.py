"""Market data gateway for token price, market cap and ATH data.

Talks to the Solana Tracker data API:
  - ``/tokens/{token}/chart``      candle highs over a window
  - ``/tokens/{token}/stats``      ATH value + timestamp (when known)
  - ``/tokens/{token}/ath``        undated ATH price (last resort)
  - ``/tokens/{token}/price/{ts}`` point-in-time price

Rate limiting: a minimum spacing between requests (``market_data_min_request_interval``)
plus tenacity retries for 429/5xx inside ``request_with_retry``.  Anything
that still fails surfaces as ``DataUnavailable`` (or ``RateLimited``) and
the caller defers the token to the next cycle.
"""

import asyncio
import logging
import time
from typing import Optional, Protocol

import httpx

from config import settings
from models.schemas import AthDescriptor, Basis, Candle, MarketWindow, TokenSnapshot
from services.errors import DataUnavailable, RateLimited
from services.http_utils import is_rate_limit, request_with_retry

logger = logging.getLogger(__name__)

# Windows longer than this use 5-minute candles instead of 1-minute ones
FINE_GRANULARITY_MAX_SECONDS = 48 * 60 * 60
SNAPSHOT_LOOKBACK_SECONDS = 60 * 60


class MarketDataGateway(Protocol):
    async def get_price_at_timestamp(self, token: str, ts: int) -> Optional[float]: ...

    async def get_time_series(
        self,
        token: str,
        from_ts: int,
        to_ts: int,
        basis: Basis = Basis.market_cap,
    ) -> list[Candle]: ...

    async def get_ath(self, token: str) -> AthDescriptor: ...


def _safe_float(val) -> Optional[float]:
    if val is None or isinstance(val, bool):
        return None
    try:
        result = float(val)
    except (ValueError, TypeError):
        return None
    # NaN and infinities are treated as missing
    if result != result or result in (float("inf"), float("-inf")):
        return None
    return result


def normalize_ts(val) -> Optional[int]:
    """Convert a provider timestamp to unix seconds (``None`` if unknown)."""
    ts = _safe_float(val)
    if ts is None or ts <= 0:
        return None
    if ts > 1e12:  # milliseconds
        ts = ts / 1000.0
    return int(ts)


def parse_candles(payload) -> list[Candle]:
    """Normalize a chart payload into ascending ``Candle`` objects.

    Accepts either ``{"data": [...]}`` or ``{"oclhv": [...]}`` (or a bare
    list).  Candles without a usable timestamp are dropped.
    """
    if isinstance(payload, dict):
        raw = payload.get("data")
        if raw is None:
            raw = payload.get("oclhv")
    else:
        raw = payload
    if not isinstance(raw, list):
        return []

    candles: list[Candle] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        ts = normalize_ts(item.get("timestamp") or item.get("t") or item.get("time"))
        if ts is None:
            continue
        price_high = _safe_float(item.get("high"))
        if price_high is None:
            price_high = _safe_float(item.get("price"))
        mcap_high = _safe_float(item.get("marketCapHigh"))
        if mcap_high is None:
            mcap_high = _safe_float(item.get("marketCap"))
        candles.append(
            Candle(timestamp=ts, price_high=price_high, market_cap_high=mcap_high)
        )

    candles.sort(key=lambda c: c.timestamp)
    return candles


def ath_from_candles(candles: list[Candle]) -> Optional[AthDescriptor]:
    """Highest market-cap candle, else highest price candle."""
    best_mc: Optional[Candle] = None
    best_price: Optional[Candle] = None
    for candle in candles:
        if candle.market_cap_high is not None and (
            best_mc is None or candle.market_cap_high > best_mc.market_cap_high
        ):
            best_mc = candle
        if candle.price_high is not None and (
            best_price is None or candle.price_high > best_price.price_high
        ):
            best_price = candle
    if best_mc is not None:
        return AthDescriptor(
            basis=Basis.market_cap, value=best_mc.market_cap_high, timestamp=best_mc.timestamp
        )
    if best_price is not None:
        return AthDescriptor(
            basis=Basis.price, value=best_price.price_high, timestamp=best_price.timestamp
        )
    return None


class SolanaTrackerClient:
    """Client for the Solana Tracker token data API."""

    def __init__(self) -> None:
        self.base_url: str = settings.market_data_api_url.rstrip("/")
        self.api_key: str = settings.market_data_api_key
        self.timeout: float = settings.market_data_timeout_seconds
        self.min_interval: float = settings.market_data_min_request_interval
        self._last_request: float = 0.0
        self._throttle = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers={
                "X-API-Key": self.api_key,
                "Content-Type": "application/json",
                "User-Agent": "progress-engine/1.0",
            },
        )

    async def _wait_turn(self) -> None:
        async with self._throttle:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_request = time.monotonic()

    async def _get_json(self, path: str, params: Optional[dict] = None):
        """GET a provider path, mapping transport failures to engine errors."""
        await self._wait_turn()
        url = f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                resp = await request_with_retry(client, "GET", url, params=params)
        except httpx.HTTPStatusError as exc:
            if is_rate_limit(exc):
                raise RateLimited(f"Rate limited on {path}") from exc
            raise DataUnavailable(
                f"HTTP {exc.response.status_code} on {path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DataUnavailable(f"Request failed on {path}: {exc}") from exc

        try:
            return resp.json()
        except ValueError as exc:
            raise DataUnavailable(f"Invalid JSON on {path}") from exc

    async def get_price_at_timestamp(self, token: str, ts: int) -> Optional[float]:
        data = await self._get_json(f"/tokens/{token}/price/{int(ts)}")
        if isinstance(data, dict):
            return _safe_float(data.get("price"))
        return _safe_float(data)

    async def get_time_series(
        self,
        token: str,
        from_ts: int,
        to_ts: int,
        basis: Basis = Basis.market_cap,
    ) -> list[Candle]:
        """Fetch candle highs for ``[from_ts, to_ts]`` in ascending order.

        Uses 1-minute candles for windows up to 48h and 5-minute candles
        beyond that.
        """
        candle_type = "5m" if (to_ts - from_ts) > FINE_GRANULARITY_MAX_SECONDS else "1m"
        params = {
            "type": candle_type,
            "timeFrom": str(int(from_ts)),
            "timeTo": str(int(to_ts)),
            "marketCap": "true" if basis == Basis.market_cap else "false",
            "removeOutliers": "true",
            "dynamicPools": "true",
            "fastCache": "true",
        }
        data = await self._get_json(f"/tokens/{token}/chart", params=params)
        candles = parse_candles(data)
        logger.debug(
            "MarketData: %d %s candles for %s (%d → %d)",
            len(candles),
            candle_type,
            token,
            from_ts,
            to_ts,
        )
        return candles

    async def get_ath(self, token: str) -> AthDescriptor:
        """Resolve the token's ATH, preferring a dated market-cap value.

        Order: ``/stats`` (dated), then a full-history 5m chart scan, then
        the undated ``/ath`` price.
        """
        try:
            stats = await self._get_json(f"/tokens/{token}/stats")
        except DataUnavailable:
            logger.info("MarketData: stats unavailable for %s, trying chart", token)
            stats = None

        if isinstance(stats, dict):
            ath_ts = normalize_ts(stats.get("athTimestamp"))
            ath_mc = _safe_float(stats.get("athMarketCap"))
            ath_price = _safe_float(stats.get("athPrice"))
            if ath_ts and ath_mc and ath_mc > 0:
                return AthDescriptor(basis=Basis.market_cap, value=ath_mc, timestamp=ath_ts)
            if ath_ts and ath_price and ath_price > 0:
                return AthDescriptor(basis=Basis.price, value=ath_price, timestamp=ath_ts)

        try:
            candles = await self.get_time_series(token, 0, int(time.time()))
        except DataUnavailable:
            candles = []
        from_chart = ath_from_candles(candles)
        if from_chart is not None:
            return from_chart

        data = await self._get_json(f"/tokens/{token}/ath")
        value = None
        if isinstance(data, dict):
            value = _safe_float(data.get("highest_price")) or _safe_float(data.get("price"))
        if value is None or value <= 0:
            raise DataUnavailable(f"ATH resolution failed for {token}")
        return AthDescriptor(basis=Basis.price, value=value, timestamp=None)


async def fetch_window(
    gateway: MarketDataGateway,
    token: str,
    from_ts: int,
    to_ts: int,
    deadline: Optional[float] = None,
) -> MarketWindow:
    """Fetch the ATH and the candle series for one token, once.

    A missing ATH is tolerated (the local high takes over), and a missing
    series is tolerated when an ATH exists.  The whole fetch is bounded by
    ``deadline`` seconds; overrunning it is ``DataUnavailable``.

    Raises:
        DataUnavailable: Neither source returned data, or the deadline passed.
    """
    if deadline is None:
        deadline = settings.market_data_deadline_seconds

    async def _fetch() -> MarketWindow:
        ath: Optional[AthDescriptor] = None
        try:
            ath = await gateway.get_ath(token)
        except DataUnavailable as exc:
            logger.info("MarketData: no ATH for %s (%s)", token, exc)

        try:
            candles = await gateway.get_time_series(token, from_ts, to_ts)
        except DataUnavailable:
            if ath is None:
                raise
            logger.info("MarketData: no series for %s, using ATH only", token)
            candles = []

        return MarketWindow(
            token=token, from_ts=from_ts, to_ts=to_ts, ath=ath, candles=candles
        )

    try:
        return await asyncio.wait_for(_fetch(), timeout=deadline)
    except asyncio.TimeoutError as exc:
        raise DataUnavailable(
            f"Market data for {token} exceeded {deadline:.0f}s deadline"
        ) from exc


async def fetch_snapshot(
    gateway: MarketDataGateway,
    token: str,
    now: int,
    deadline: Optional[float] = None,
) -> TokenSnapshot:
    """Current price / market cap plus ATH, for the corruption auditor."""
    if deadline is None:
        deadline = settings.market_data_deadline_seconds

    async def _fetch() -> TokenSnapshot:
        window = await fetch_window(
            gateway, token, now - SNAPSHOT_LOOKBACK_SECONDS, now, deadline=deadline
        )
        last = window.candles[-1] if window.candles else None

        current_price: Optional[float] = None
        try:
            current_price = await gateway.get_price_at_timestamp(token, now)
        except DataUnavailable:
            logger.debug("MarketData: no spot price for %s", token)
        if current_price is None and last is not None:
            current_price = last.price_high

        return TokenSnapshot(
            token=token,
            current_price=current_price,
            current_market_cap=last.market_cap_high if last is not None else None,
            ath=window.ath,
        )

    try:
        return await asyncio.wait_for(_fetch(), timeout=deadline)
    except asyncio.TimeoutError as exc:
        raise DataUnavailable(f"Snapshot for {token} exceeded deadline") from exc


_client: Optional[SolanaTrackerClient] = None


def get_market_data_client() -> SolanaTrackerClient:
    global _client
    if _client is None:
        _client = SolanaTrackerClient()
    return _client
