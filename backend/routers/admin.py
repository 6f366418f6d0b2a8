"""Administrative endpoints: ATH backfill runs and corruption sweeps.

Every route requires the ``X-Admin-Secret`` header to match
``settings.admin_secret``.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from config import settings
from models.schemas import (
    BackfillRequest,
    BackfillRun,
    BackfillRunListResponse,
    CallFilters,
    CleanupRequest,
    CorruptionFixRequest,
    CorruptionReport,
)
from services.auditor import run_corruption_audit
from services.backfill import cleanup_old_runs, get_run_status, list_runs, run_backfill
from services.errors import ValidationError

logger = logging.getLogger(__name__)


async def require_admin(x_admin_secret: Optional[str] = Header(default=None)) -> None:
    if not settings.admin_secret:
        raise HTTPException(status_code=500, detail="Admin secret is not configured")
    if not x_admin_secret or not hmac.compare_digest(x_admin_secret, settings.admin_secret):
        raise HTTPException(status_code=401, detail="Invalid admin secret")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ── ATH backfill ──


@router.post("/backfill-ath", response_model=BackfillRun)
async def start_backfill(request: BackfillRequest) -> BackfillRun:
    """Process one page of a backfill run (new or resumed).

    Raises:
        HTTPException 400: Invalid limit, time range or cursor, or the run
            is already completed.
    """
    filters = CallFilters(
        token=request.token,
        group_id=request.group_id,
        from_ts=request.from_ts,
        to_ts=request.to_ts,
    )
    try:
        run = await run_backfill(
            filters=filters,
            limit=request.limit,
            dry_run=request.dry_run,
            run_id=request.run_id,
            cursor=request.cursor,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    logger.info("Admin endpoint: backfill run %s → %s", run.run_id, run.status.value)
    return run


@router.get("/backfill-ath/status", response_model=BackfillRun)
async def backfill_status(run_id: str = Query(...)) -> BackfillRun:
    run = get_run_status(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/backfill-ath/runs", response_model=BackfillRunListResponse)
async def backfill_runs(limit: int = Query(default=50, ge=1, le=500)) -> BackfillRunListResponse:
    runs = list_runs(limit)
    return BackfillRunListResponse(runs=runs, total=len(runs))


@router.post("/backfill-ath/cleanup")
async def backfill_cleanup(request: CleanupRequest) -> dict:
    """Delete run records older than ``older_than_days`` (default: retention setting)."""
    try:
        deleted = cleanup_old_runs(request.older_than_days)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"deleted": deleted}


# ── Corruption ──


@router.get("/corruption", response_model=CorruptionReport)
async def corruption_report(
    token: Optional[str] = Query(default=None),
    group_id: Optional[str] = Query(default=None),
) -> CorruptionReport:
    """Dry-run audit: report corrupted calls without changing anything."""
    return await run_corruption_audit(
        fix=False, filters=CallFilters(token=token, group_id=group_id)
    )


@router.post("/corruption/fix", response_model=CorruptionReport)
async def corruption_fix(request: CorruptionFixRequest) -> CorruptionReport:
    """Audit and reset every corrupted call to its entry baseline."""
    logger.warning(
        "Admin endpoint: corruption fix triggered (token=%s, group=%s)",
        request.token,
        request.group_id,
    )
    return await run_corruption_audit(
        fix=True, filters=CallFilters(token=request.token, group_id=request.group_id)
    )
