import asyncio
from typing import Optional

import pytest

from models.schemas import (
    AthDescriptor,
    BackfillRun,
    Basis,
    CallFilters,
    CallRow,
    Candle,
    Entry,
    Milestone,
    Progress,
    ProgressMax,
    empty_milestones,
)
from services import refresh_progress
from services.errors import DataUnavailable
from services.token_lock import InMemoryLockStore, TokenLockCoordinator


class FakeGateway:
    """In-memory market data keyed by token."""

    def __init__(self) -> None:
        self.aths: dict[str, AthDescriptor] = {}
        self.candles: dict[str, list[Candle]] = {}
        self.prices: dict[str, float] = {}
        self.failing: set[str] = set()
        self.delay: float = 0.0
        self.ath_calls: dict[str, int] = {}
        self.series_calls: dict[str, int] = {}

    async def get_price_at_timestamp(self, token: str, ts: int) -> Optional[float]:
        if token in self.failing:
            raise DataUnavailable(f"no price for {token}")
        return self.prices.get(token)

    async def get_time_series(self, token, from_ts, to_ts, basis=Basis.market_cap):
        self.series_calls[token] = self.series_calls.get(token, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if token in self.failing or token not in self.candles:
            raise DataUnavailable(f"no series for {token}")
        return [c for c in self.candles[token] if from_ts <= c.timestamp <= to_ts]

    async def get_ath(self, token: str) -> AthDescriptor:
        self.ath_calls[token] = self.ath_calls.get(token, 0) + 1
        if token in self.failing or token not in self.aths:
            raise DataUnavailable(f"no ATH for {token}")
        return self.aths[token]


class FakeCallStore:
    """Stands in for the Supabase call and backfill-run tables."""

    def __init__(self) -> None:
        self.calls: dict[str, CallRow] = {}
        self.runs: dict[str, BackfillRun] = {}
        self.audit: list[dict] = []

    def add(self, call: CallRow) -> CallRow:
        self.calls[call.id] = call
        return call

    # ── calls ──

    def list_calls(self, filters: CallFilters, active_only=True, offset=0, limit=None):
        rows = []
        for call in self.calls.values():
            if active_only and call.status.value != "active":
                continue
            if filters.token and call.token != filters.token:
                continue
            if filters.tokens and call.token not in filters.tokens:
                continue
            if filters.group_id and call.group_id != filters.group_id:
                continue
            if filters.from_ts is not None and call.call_ts < filters.from_ts:
                continue
            if filters.to_ts is not None and call.call_ts > filters.to_ts:
                continue
            rows.append(call.model_copy(deep=True))
        rows.sort(key=lambda c: (c.call_ts, c.id))
        if limit is not None:
            rows = rows[offset:offset + limit]
        return rows

    def get_active_calls(self, filters=None):
        return self.list_calls(filters or CallFilters(), active_only=True)

    def get_call(self, call_id):
        call = self.calls.get(call_id)
        return call.model_copy(deep=True) if call else None

    def get_calls_by_ids(self, call_ids):
        return [self.calls[i].model_copy(deep=True) for i in call_ids if i in self.calls]

    def update_call_progress(
        self,
        call_id,
        max_,
        multiplier,
        milestones,
        audit_note=None,
        rule=None,
        previous_multiplier=None,
        run_id=None,
    ) -> bool:
        call = self.calls[call_id]
        if call.progress.multiplier >= multiplier:
            return False
        merged = dict(call.milestones)
        for key, milestone in milestones.items():
            if not merged.get(key, Milestone()).hit:
                merged[key] = milestone
        self.calls[call_id] = call.model_copy(
            update={
                "progress": Progress(max=max_, multiplier=multiplier),
                "milestones": merged,
            }
        )
        self.audit.append(
            {"call_id": call_id, "kind": "progress", "rule": rule, "run_id": run_id, "note": audit_note}
        )
        return True

    def reset_call_progress(self, call, reason, max_possible_pct=None, run_id=None) -> bool:
        stored = self.calls[call.id]
        if stored.progress.multiplier != call.progress.multiplier:
            return False
        self.calls[call.id] = stored.model_copy(
            update={
                "progress": Progress(
                    max=ProgressMax(
                        price=call.entry.price,
                        market_cap=call.entry.market_cap,
                        timestamp=call.call_ts,
                        basis=call.basis,
                    ),
                    multiplier=1.0,
                ),
                "milestones": empty_milestones(),
            }
        )
        self.audit.append({"call_id": call.id, "kind": "corruption-fix", "reason": reason})
        return True

    # ── backfill runs ──

    def insert_backfill_run(self, run):
        self.runs[run.run_id] = run.model_copy(deep=True)

    def update_backfill_run(self, run):
        self.runs[run.run_id] = run.model_copy(deep=True)

    def get_backfill_run(self, run_id):
        run = self.runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    def list_backfill_runs(self, limit=50):
        runs = sorted(self.runs.values(), key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    def delete_backfill_runs_before(self, cutoff):
        old = [k for k, r in self.runs.items() if r.started_at < cutoff]
        for key in old:
            del self.runs[key]
        return len(old)


def make_call(
    call_id: str = "c1",
    token: str = "TOKEN",
    call_ts: int = 1_000,
    basis: Basis = Basis.market_cap,
    price: Optional[float] = 0.001,
    market_cap: Optional[float] = 1_000_000,
    multiplier: float = 1.0,
    group_id: Optional[str] = None,
    milestones: Optional[dict[str, Milestone]] = None,
) -> CallRow:
    return CallRow(
        id=call_id,
        token=token,
        group_id=group_id,
        call_ts=call_ts,
        basis=basis,
        entry=Entry(price=price, market_cap=market_cap),
        progress=Progress(multiplier=multiplier),
        milestones=milestones if milestones is not None else empty_milestones(),
    )


@pytest.fixture(autouse=True)
def reset_refresh_state():
    refresh_progress.complete_refresh()
    refresh_progress._progress.update({"started_at": None, "completed_at": None, "error": None})
    refresh_progress.save_refresh_summary({})
    yield


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def lock_store():
    return InMemoryLockStore()


@pytest.fixture
def lock(lock_store):
    return TokenLockCoordinator(lock_store, ttl_seconds=25)


@pytest.fixture
def store(monkeypatch, gateway, lock):
    """Route every service's database access to an in-memory store."""
    fake = FakeCallStore()

    monkeypatch.setattr("services.reconciler.update_call_progress", fake.update_call_progress)

    monkeypatch.setattr("services.refresh_engine.get_active_calls", fake.get_active_calls)
    monkeypatch.setattr("services.refresh_engine.get_call", fake.get_call)
    monkeypatch.setattr("services.refresh_engine.get_calls_by_ids", fake.get_calls_by_ids)
    monkeypatch.setattr("services.refresh_engine.get_market_data_client", lambda: gateway)
    monkeypatch.setattr("services.refresh_engine.get_token_lock_coordinator", lambda: lock)

    monkeypatch.setattr("services.auditor.list_calls", fake.list_calls)
    monkeypatch.setattr("services.auditor.get_calls_by_ids", fake.get_calls_by_ids)
    monkeypatch.setattr("services.auditor.reset_call_progress", fake.reset_call_progress)
    monkeypatch.setattr("services.auditor.get_market_data_client", lambda: gateway)
    monkeypatch.setattr("services.auditor.get_token_lock_coordinator", lambda: lock)

    monkeypatch.setattr("services.backfill.list_calls", fake.list_calls)
    monkeypatch.setattr("services.backfill.insert_backfill_run", fake.insert_backfill_run)
    monkeypatch.setattr("services.backfill.update_backfill_run", fake.update_backfill_run)
    monkeypatch.setattr("services.backfill.get_backfill_run", fake.get_backfill_run)
    monkeypatch.setattr("services.backfill.list_backfill_runs", fake.list_backfill_runs)
    monkeypatch.setattr(
        "services.backfill.delete_backfill_runs_before", fake.delete_backfill_runs_before
    )
    return fake
