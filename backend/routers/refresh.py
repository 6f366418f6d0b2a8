"""Refresh trigger endpoints.

A full sweep runs as a background task so the HTTP response returns
immediately; single-call and per-token refreshes run inline.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException

from models.schemas import (
    ReconcileResult,
    RefreshStatusResponse,
    RefreshTokensRequest,
    RefreshTriggerResponse,
    SweepSummary,
)
from services.refresh_engine import (
    get_refresh_status,
    refresh_all_calls,
    refresh_call,
    refresh_tokens,
)
from services.refresh_progress import is_refreshing

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/refresh", tags=["refresh"])


@router.get("/status", response_model=RefreshStatusResponse)
async def refresh_status() -> RefreshStatusResponse:
    """Current sweep state and the counts from the last completed sweep."""
    return get_refresh_status()


@router.post("", response_model=RefreshTriggerResponse)
async def trigger_refresh(background_tasks: BackgroundTasks) -> RefreshTriggerResponse:
    """Trigger a sweep over every active call."""
    if is_refreshing():
        return RefreshTriggerResponse(status="already-running")

    logger.info("Refresh endpoint: full sweep triggered")
    background_tasks.add_task(refresh_all_calls)
    return RefreshTriggerResponse(status="running")


@router.post("/tokens", response_model=SweepSummary)
async def trigger_token_refresh(request: RefreshTokensRequest) -> SweepSummary:
    """Refresh every active call on the given tokens."""
    tokens = list(dict.fromkeys(t.strip() for t in request.tokens if t.strip()))
    if not tokens:
        raise HTTPException(status_code=400, detail="No tokens provided")

    logger.info("Refresh endpoint: %d tokens requested", len(tokens))
    return await refresh_tokens(tokens)


@router.post("/{call_id}", response_model=ReconcileResult)
async def trigger_call_refresh(call_id: str) -> ReconcileResult:
    """Refresh a single call.

    Raises:
        HTTPException 404: If the call does not exist.
    """
    result = await refresh_call(call_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Call not found")
    return result
