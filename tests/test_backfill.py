import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_call
from models.schemas import AthDescriptor, BackfillRun, Basis, CallFilters, CallStatus, Candle, RunStatus
from services.backfill import (
    cleanup_old_runs,
    get_run_status,
    list_runs,
    new_run_id,
    run_backfill,
    run_backfill_pages,
)
from services.errors import ValidationError


@pytest.fixture
def seeded(store, gateway):
    now = int(time.time())
    for i in range(5):
        call = make_call(f"c{i}", token=f"T{i % 2}", call_ts=now - 10_000 + i)
        if i == 4:
            call = call.model_copy(update={"status": CallStatus.completed})
        store.add(call)
    for token in ("T0", "T1"):
        gateway.aths[token] = AthDescriptor(basis=Basis.market_cap, value=3_000_000, timestamp=now - 100)
        gateway.candles[token] = [Candle(timestamp=now - 500, market_cap_high=2_500_000)]
    return store


def test_pages_through_run_with_cursor(seeded):
    first = asyncio.run(run_backfill(limit=2, run_id="run-1"))
    assert first.status == RunStatus.in_progress
    assert first.has_more is True
    assert first.next_cursor == "2"
    assert first.scanned == 2
    assert seeded.runs["run-1"].status == RunStatus.in_progress

    second = asyncio.run(run_backfill(limit=2, run_id="run-1"))
    assert second.cursor == "2"
    assert second.scanned == 4

    last = asyncio.run(run_backfill(limit=2, run_id="run-1"))
    assert last.status == RunStatus.completed
    assert last.has_more is False
    assert last.completed_at is not None
    # Historical sweep includes completed calls
    assert last.scanned == 5
    assert last.updated == 5
    assert all(c.progress.multiplier == pytest.approx(3.0) for c in seeded.calls.values())

    with pytest.raises(ValidationError):
        asyncio.run(run_backfill(limit=2, run_id="run-1"))


def test_dry_run_persists_nothing(seeded):
    run = asyncio.run(run_backfill(limit=10, dry_run=True))

    assert run.status == RunStatus.completed
    assert run.updated == 5
    assert seeded.runs == {}
    assert all(c.progress.multiplier == 1.0 for c in seeded.calls.values())
    assert seeded.audit == []


def test_filters_restrict_calls(seeded):
    run = asyncio.run(run_backfill(filters=CallFilters(token="T1"), limit=10))
    assert run.scanned == 2
    assert seeded.calls["c0"].progress.multiplier == 1.0
    assert seeded.calls["c1"].progress.multiplier == pytest.approx(3.0)


def test_audit_rows_carry_run_id(seeded):
    asyncio.run(run_backfill(limit=10, run_id="run-audit"))
    assert {row["run_id"] for row in seeded.audit} == {"run-audit"}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": 1001},
        {"limit": 0},
        {"filters": CallFilters(from_ts=200, to_ts=100)},
        {"cursor": "abc"},
        {"cursor": "-1"},
    ],
)
def test_rejects_invalid_requests(store, kwargs):
    with pytest.raises(ValidationError):
        asyncio.run(run_backfill(**kwargs))


def test_run_id_format():
    assert new_run_id(datetime(2024, 3, 5, 7, 8, 9, tzinfo=timezone.utc)) == "20240305-070809"


def test_run_listing_and_cleanup(store):
    now = datetime.now(timezone.utc)
    store.insert_backfill_run(BackfillRun(run_id="old", limit=10, started_at=now - timedelta(days=40)))
    store.insert_backfill_run(BackfillRun(run_id="new", limit=10, started_at=now - timedelta(days=1)))

    assert [r.run_id for r in list_runs()] == ["new", "old"]
    assert get_run_status("old").run_id == "old"

    assert cleanup_old_runs(30) == 1
    assert get_run_status("old") is None
    assert get_run_status("new") is not None

    with pytest.raises(ValidationError):
        cleanup_old_runs(-1)


def test_dry_run_walk_totals_every_page(seeded):
    pages = []

    run = asyncio.run(
        run_backfill_pages(limit=2, dry_run=True, on_page=lambda n, r: pages.append(r.scanned))
    )

    assert pages == [2, 2, 1]
    assert run.scanned == 5
    assert run.updated == 5
    assert run.status == RunStatus.completed
    assert seeded.runs == {}


def test_live_walk_stops_at_max_pages(seeded):
    run = asyncio.run(run_backfill_pages(limit=2, run_id="run-2", max_pages=2))

    assert run.scanned == 4
    assert run.has_more is True
    assert seeded.runs["run-2"].scanned == 4
    assert seeded.runs["run-2"].next_cursor == "4"
