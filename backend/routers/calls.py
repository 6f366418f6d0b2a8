"""Call read endpoints."""

from fastapi import APIRouter, HTTPException

from models.database import get_call
from models.schemas import CallMilestonesResponse
from services.milestones import milestone_progress, next_milestone

router = APIRouter(prefix="/calls", tags=["calls"])


@router.get("/{call_id}/milestones", response_model=CallMilestonesResponse)
async def call_milestones(call_id: str) -> CallMilestonesResponse:
    """Milestone state for a call, with progress toward each threshold."""
    call = get_call(call_id)
    if call is None:
        raise HTTPException(status_code=404, detail="Call not found")

    multiplier = call.progress.multiplier
    return CallMilestonesResponse(
        call_id=call.id,
        multiplier=multiplier,
        milestones=call.milestones,
        progress=milestone_progress(multiplier),
        next_milestone=next_milestone(multiplier),
    )
