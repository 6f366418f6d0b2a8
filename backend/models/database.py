import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError as SchemaError
from supabase import create_client, Client

from config import settings
from models.schemas import (
    BackfillRun,
    Basis,
    CallFilters,
    CallRow,
    CallStatus,
    Entry,
    Milestone,
    Progress,
    ProgressMax,
    empty_milestones,
)

logger = logging.getLogger(__name__)

_supabase_client: Optional[Client] = None


def get_supabase() -> Client:
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = create_client(
            settings.supabase_url, settings.supabase_service_key
        )
    return _supabase_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Calls ──


def _milestones_from_json(raw: Optional[dict]) -> dict[str, Milestone]:
    milestones = empty_milestones()
    for key, value in (raw or {}).items():
        if isinstance(value, dict):
            milestones[key] = Milestone(
                hit=bool(value.get("hit", False)),
                timestamp=value.get("timestamp", value.get("ts")),
            )
    return milestones


def _milestones_to_json(milestones: dict[str, Milestone]) -> dict:
    return {key: m.model_dump() for key, m in milestones.items()}


def _row_to_call(row: dict) -> CallRow:
    entry = row.get("entry") or {}
    max_basis = row.get("max_basis")
    return CallRow(
        id=str(row["id"]),
        token=row["token"],
        caller_id=row.get("caller_id"),
        group_id=row.get("group_id"),
        call_ts=row["call_ts"],
        basis=row["basis"],
        entry=Entry(
            price=entry.get("price"),
            market_cap=entry.get("marketCap", entry.get("market_cap")),
        ),
        progress=Progress(
            max=ProgressMax(
                price=row.get("max_price"),
                market_cap=row.get("max_market_cap"),
                timestamp=row.get("max_ts"),
                basis=Basis(max_basis) if max_basis else None,
            ),
            multiplier=row.get("multiplier") or 1.0,
        ),
        milestones=_milestones_from_json(row.get("milestones")),
        status=row.get("status") or CallStatus.active.value,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _rows_to_calls(rows: list[dict]) -> list[CallRow]:
    calls: list[CallRow] = []
    for row in rows:
        try:
            calls.append(_row_to_call(row))
        except (KeyError, ValueError, SchemaError):
            logger.exception("DB: skipping malformed call row %s", row.get("id"))
    return calls


def list_calls(
    filters: CallFilters,
    active_only: bool = True,
    offset: int = 0,
    limit: Optional[int] = None,
) -> list[CallRow]:
    """Calls matching ``filters``, oldest call first.

    ``offset``/``limit`` page through the ordered result.
    """
    db = get_supabase()
    query = db.table("calls").select("*")
    if active_only:
        query = query.eq("status", CallStatus.active.value)
    if filters.token:
        query = query.eq("token", filters.token)
    if filters.tokens:
        query = query.in_("token", filters.tokens)
    if filters.group_id:
        query = query.eq("group_id", filters.group_id)
    if filters.from_ts is not None:
        query = query.gte("call_ts", filters.from_ts)
    if filters.to_ts is not None:
        query = query.lte("call_ts", filters.to_ts)
    query = query.order("call_ts").order("id")
    if limit is not None:
        query = query.range(offset, offset + limit - 1)
    result = query.execute()
    return _rows_to_calls(result.data)


def get_active_calls(filters: Optional[CallFilters] = None) -> list[CallRow]:
    return list_calls(filters or CallFilters(), active_only=True)


def get_call(call_id: str) -> Optional[CallRow]:
    db = get_supabase()
    result = db.table("calls").select("*").eq("id", call_id).execute()
    if result.data:
        return _row_to_call(result.data[0])
    return None


def get_calls_by_ids(call_ids: list[str]) -> list[CallRow]:
    if not call_ids:
        return []
    db = get_supabase()
    result = db.table("calls").select("*").in_("id", call_ids).execute()
    return _rows_to_calls(result.data)


def _merge_write_once(
    existing: dict[str, Milestone], new: dict[str, Milestone]
) -> dict[str, Milestone]:
    merged = dict(existing)
    for key, milestone in new.items():
        if not merged.get(key, Milestone()).hit:
            merged[key] = milestone
    return merged


def update_call_progress(
    call_id: str,
    max_: ProgressMax,
    multiplier: float,
    milestones: dict[str, Milestone],
    audit_note: Optional[str] = None,
    rule: Optional[str] = None,
    previous_multiplier: Optional[float] = None,
    run_id: Optional[str] = None,
) -> bool:
    """Write a progress improvement; a no-op unless it beats the stored multiplier.

    Returns:
        Whether a row was updated.
    """
    db = get_supabase()
    data: dict = {
        "max_price": max_.price,
        "max_market_cap": max_.market_cap,
        "max_ts": max_.timestamp,
        "max_basis": max_.basis.value if max_.basis else None,
        "multiplier": multiplier,
        "updated_at": _now_iso(),
    }
    if milestones:
        current = get_call(call_id)
        existing = current.milestones if current else empty_milestones()
        data["milestones"] = _milestones_to_json(_merge_write_once(existing, milestones))

    try:
        result = (
            db.table("calls")
            .update(data)
            .eq("id", call_id)
            .or_(f"multiplier.is.null,multiplier.lt.{multiplier}")
            .execute()
        )
    except Exception:
        logger.exception("DB: failed to update progress for call %s", call_id)
        raise

    if not result.data:
        return False

    insert_call_audit(
        call_id=call_id,
        kind="progress",
        rule=rule,
        run_id=run_id,
        before_multiplier=previous_multiplier,
        after_multiplier=multiplier,
        details={"note": audit_note},
    )
    return True


def reset_call_progress(
    call: CallRow,
    reason: str,
    max_possible_pct: Optional[float] = None,
    run_id: Optional[str] = None,
) -> bool:
    """Administrative corruption fix: back to the entry baseline, audited.

    ``call`` is the audited copy; the reset only matches while the stored
    multiplier still equals it.

    Returns:
        Whether a row was reset.
    """
    db = get_supabase()
    data = {
        "max_price": call.entry.price,
        "max_market_cap": call.entry.market_cap,
        "max_ts": call.call_ts,
        "max_basis": call.basis.value,
        "multiplier": 1.0,
        "milestones": _milestones_to_json(empty_milestones()),
        "updated_at": _now_iso(),
    }
    try:
        result = (
            db.table("calls")
            .update(data)
            .eq("id", call.id)
            .eq("multiplier", call.progress.multiplier)
            .execute()
        )
    except Exception:
        logger.exception("DB: failed to reset progress for call %s", call.id)
        raise

    if not result.data:
        return False

    insert_call_audit(
        call_id=call.id,
        kind="corruption-fix",
        run_id=run_id,
        before_multiplier=call.progress.multiplier,
        after_multiplier=1.0,
        details={
            "reason": reason,
            "max_possible_pct": max_possible_pct,
            "previous_progress": call.progress.model_dump(mode="json"),
            "previous_milestones": _milestones_to_json(call.milestones),
        },
    )
    return True


# ── Call audit trail (append-only) ──


def insert_call_audit(
    call_id: str,
    kind: str,
    rule: Optional[str] = None,
    run_id: Optional[str] = None,
    before_multiplier: Optional[float] = None,
    after_multiplier: Optional[float] = None,
    details: Optional[dict] = None,
) -> None:
    db = get_supabase()
    data = {
        "call_id": call_id,
        "kind": kind,
        "rule": rule,
        "run_id": run_id,
        "before_multiplier": before_multiplier,
        "after_multiplier": after_multiplier,
        "details": details or {},
    }
    try:
        db.table("call_audit").insert(data).execute()
    except Exception:
        logger.exception("DB: failed to insert audit row for call %s", call_id)
        raise


# ── Token locks ──


def try_acquire_token_lock(
    token: str, holder_id: str, ttl_seconds: float, now: float
) -> bool:
    """Compare-and-set a lease: insert if absent, else take it over only if expired."""
    db = get_supabase()
    row = {
        "token": token,
        "holder_id": holder_id,
        "acquired_at": now,
        "expires_at": now + ttl_seconds,
    }
    inserted = (
        db.table("token_locks")
        .upsert(row, on_conflict="token", ignore_duplicates=True)
        .execute()
    )
    if inserted.data:
        return True

    taken = (
        db.table("token_locks")
        .update(row)
        .eq("token", token)
        .lte("expires_at", now)
        .execute()
    )
    return bool(taken.data)


def release_token_lock(token: str, holder_id: str) -> None:
    db = get_supabase()
    db.table("token_locks").delete().eq("token", token).eq("holder_id", holder_id).execute()


# ── Backfill runs ──


def _run_to_row(run: BackfillRun) -> dict:
    return run.model_dump(mode="json")


def insert_backfill_run(run: BackfillRun) -> None:
    db = get_supabase()
    try:
        db.table("backfill_runs").insert(_run_to_row(run)).execute()
    except Exception:
        logger.exception("DB: failed to insert backfill run %s", run.run_id)
        raise


def update_backfill_run(run: BackfillRun) -> None:
    db = get_supabase()
    db.table("backfill_runs").update(_run_to_row(run)).eq("run_id", run.run_id).execute()


def get_backfill_run(run_id: str) -> Optional[BackfillRun]:
    db = get_supabase()
    result = db.table("backfill_runs").select("*").eq("run_id", run_id).execute()
    if result.data:
        return BackfillRun(**result.data[0])
    return None


def list_backfill_runs(limit: int = 50) -> list[BackfillRun]:
    db = get_supabase()
    result = (
        db.table("backfill_runs")
        .select("*")
        .order("started_at", desc=True)
        .limit(limit)
        .execute()
    )
    return [BackfillRun(**row) for row in result.data]


def delete_backfill_runs_before(cutoff: datetime) -> int:
    db = get_supabase()
    result = (
        db.table("backfill_runs")
        .delete()
        .lt("started_at", cutoff.isoformat())
        .execute()
    )
    return len(result.data)
