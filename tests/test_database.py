import types

import pytest

from conftest import make_call
from models import database
from models.schemas import Basis, Milestone, ProgressMax, empty_milestones


class FakeQuery:
    """Records a PostgREST builder chain; ``execute`` pops the next scripted result."""

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.steps = []

    def __getattr__(self, name):
        def step(*args, **kwargs):
            self.steps.append((name, args, kwargs))
            return self

        return step

    def execute(self):
        self.client.executed.append(self)
        return types.SimpleNamespace(data=self.client.responses.pop(0))

    def args(self, name):
        return [args for step, args, _ in self.steps if step == name]


class FakeSupabase:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.executed = []

    def table(self, name):
        return FakeQuery(self, name)


@pytest.fixture
def db(monkeypatch):
    def install(*responses):
        client = FakeSupabase(*responses)
        monkeypatch.setattr(database, "get_supabase", lambda: client)
        return client

    return install


def _row(multiplier=1.0, milestones=None):
    return {
        "id": "c1",
        "token": "TOKEN",
        "call_ts": 1_000,
        "basis": "marketCap",
        "entry": {"price": 0.001, "marketCap": 1_000_000},
        "multiplier": multiplier,
        "milestones": milestones or {},
    }


def _progress_args(multiplier=2.0, milestones=None):
    return dict(
        call_id="c1",
        max_=ProgressMax(market_cap=2_000_000, timestamp=5_000, basis=Basis.market_cap),
        multiplier=multiplier,
        milestones=milestones or {},
        rule="ath-after-call",
        previous_multiplier=1.0,
    )


def test_progress_write_is_conditional_on_a_lower_multiplier(db):
    client = db([{"id": "c1"}], [{}])

    assert database.update_call_progress(**_progress_args()) is True

    update, audit = client.executed
    assert update.table == "calls"
    assert update.args("eq") == [("id", "c1")]
    # A NULL multiplier reads as the 1.0 baseline, so it must also match
    assert update.args("or_") == [("multiplier.is.null,multiplier.lt.2.0",)]
    assert audit.table == "call_audit"
    assert audit.args("insert")[0][0]["after_multiplier"] == 2.0


def test_stale_write_is_rejected_without_audit(db):
    client = db([])

    assert database.update_call_progress(**_progress_args()) is False
    assert len(client.executed) == 1
    assert client.responses == []


def test_reapplying_the_same_result_is_a_no_op(db):
    client = db([{"id": "c1"}], [{}], [])

    assert database.update_call_progress(**_progress_args()) is True
    assert database.update_call_progress(**_progress_args()) is False
    assert [q.table for q in client.executed] == ["calls", "call_audit", "calls"]


def test_milestone_merge_keeps_first_hit(db):
    stored = {"x2": {"hit": True, "timestamp": 100}}
    client = db([_row(milestones=stored)], [{"id": "c1"}], [{}])
    new = {"x2": Milestone(hit=True, timestamp=500), "x5": Milestone(hit=True, timestamp=600)}

    database.update_call_progress(**_progress_args(multiplier=6.0, milestones=new))

    read, update, _ = client.executed
    assert read.args("select") == [("*",)]
    written = update.args("update")[0][0]["milestones"]
    assert written["x2"] == {"hit": True, "timestamp": 100}
    assert written["x5"] == {"hit": True, "timestamp": 600}
    assert written["x10"] == {"hit": False, "timestamp": None}


def test_null_multiplier_row_reads_as_baseline(db):
    db([_row(multiplier=None)])
    assert database.get_call("c1").progress.multiplier == 1.0


def test_reset_only_matches_the_audited_multiplier(db):
    milestones = empty_milestones()
    milestones["x2"] = Milestone(hit=True, timestamp=2_000)
    call = make_call(multiplier=901.0, milestones=milestones)
    client = db([])

    assert database.reset_call_progress(call, reason="Extreme gain") is False

    (update,) = client.executed
    assert ("multiplier", 901.0) in update.args("eq")
    assert update.args("update")[0][0]["multiplier"] == 1.0


def test_reset_records_previous_progress(db):
    milestones = empty_milestones()
    milestones["x2"] = Milestone(hit=True, timestamp=2_000)
    call = make_call(multiplier=901.0, milestones=milestones)
    client = db([{"id": "c1"}], [{}])

    assert database.reset_call_progress(call, reason="Extreme gain", run_id="r1") is True

    audit = client.executed[1].args("insert")[0][0]
    assert audit["kind"] == "corruption-fix"
    assert audit["before_multiplier"] == 901.0
    assert audit["details"]["previous_milestones"]["x2"] == {"hit": True, "timestamp": 2_000}


def test_lock_acquired_by_insert(db):
    client = db([{"token": "TOKEN"}])

    assert database.try_acquire_token_lock("TOKEN", "a", 60, 1_000.0) is True

    (upsert,) = client.executed
    row, = upsert.args("upsert")[0]
    assert row["expires_at"] == 1_060.0
    assert upsert.steps[0][2] == {"on_conflict": "token", "ignore_duplicates": True}


def test_live_lease_is_not_taken_over(db):
    client = db([], [])

    assert database.try_acquire_token_lock("TOKEN", "b", 60, 1_030.0) is False

    takeover = client.executed[1]
    assert takeover.args("eq") == [("token", "TOKEN")]
    assert takeover.args("lte") == [("expires_at", 1_030.0)]


def test_expired_lease_is_taken_over(db):
    client = db([], [{"token": "TOKEN", "holder_id": "b"}])

    assert database.try_acquire_token_lock("TOKEN", "b", 60, 1_100.0) is True
    assert client.executed[1].args("update")[0][0]["holder_id"] == "b"


def test_release_is_scoped_to_holder(db):
    client = db([])

    database.release_token_lock("TOKEN", "a")

    assert client.executed[0].args("eq") == [("token", "TOKEN"), ("holder_id", "a")]
