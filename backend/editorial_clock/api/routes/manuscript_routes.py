"""
Manuscript API Routes.

Stage transitions reported by the editorial workflow, and the per-manuscript
deadline, history and timeline views.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from pydantic import BaseModel, Field

from editorial_clock.models.schemas import OccupancyResponse, TimelineEventResponse
from editorial_clock.services.container import Services, get_services


router = APIRouter(prefix="/api/manuscripts", tags=["Manuscripts"])


# ==========================================
# PYDANTIC MODELS
# ==========================================

class EnterStageRequest(BaseModel):
    """Request body for moving a manuscript into a stage."""
    stage_key: str = Field(..., description="Target stage key")
    actor_id: str = Field("system", description="Who performed the transition")
    assignee_id: Optional[str] = Field(None, description="Recipient of this stage's reminders")
    at: Optional[datetime] = Field(None, description="Transition time (defaults to now)")


class ExitPipelineRequest(BaseModel):
    """Request body for taking a manuscript out of the workflow."""
    actor_id: str = Field("system", description="Who performed the transition")
    reason: Optional[str] = Field(None, description="e.g. 'accepted', 'rejected', 'withdrawn by author'")
    at: Optional[datetime] = Field(None, description="Transition time (defaults to now)")


# ==========================================
# TRANSITIONS
# ==========================================

@router.post(
    "/{manuscript_id}/stage",
    summary="Enter Stage",
    description="Close the current stage (cancelling its pending reminders) and open the new one"
)
async def enter_stage(
    body: EnterStageRequest,
    manuscript_id: str = Path(..., description="Manuscript ID"),
    services: Services = Depends(get_services),
) -> dict:
    occupancy = services.tracker.enter_stage(
        manuscript_id,
        body.stage_key,
        at=body.at,
        actor_id=body.actor_id,
        assignee_id=body.assignee_id,
    )
    return {
        "success": True,
        "occupancy": OccupancyResponse.from_record(occupancy),
    }


@router.post(
    "/{manuscript_id}/exit",
    summary="Exit Pipeline",
    description="Close the open stage without opening another"
)
async def exit_pipeline(
    body: Optional[ExitPipelineRequest] = None,
    manuscript_id: str = Path(..., description="Manuscript ID"),
    services: Services = Depends(get_services),
) -> dict:
    body = body or ExitPipelineRequest()
    occupancy = services.tracker.exit_pipeline(
        manuscript_id,
        at=body.at,
        actor_id=body.actor_id,
        reason=body.reason,
    )
    return {
        "success": True,
        "occupancy": OccupancyResponse.from_record(occupancy),
    }


# ==========================================
# QUERIES
# ==========================================

@router.get(
    "/{manuscript_id}/stage",
    summary="Current Stage"
)
async def current_stage(
    manuscript_id: str = Path(..., description="Manuscript ID"),
    services: Services = Depends(get_services),
) -> dict:
    return OccupancyResponse.from_record(services.tracker.current_occupancy(manuscript_id))


@router.get(
    "/{manuscript_id}/history",
    summary="Stage History",
    description="Every stage occupancy, oldest first"
)
async def stage_history(
    manuscript_id: str = Path(..., description="Manuscript ID"),
    services: Services = Depends(get_services),
) -> dict:
    services.admin.require_manuscript(manuscript_id)
    history = services.tracker.history(manuscript_id)
    return {
        "manuscript_id": manuscript_id,
        "history": [OccupancyResponse.from_record(o) for o in history],
        "count": len(history),
    }


@router.get(
    "/{manuscript_id}/deadline",
    summary="Stage Deadline",
    description="Due date, days remaining or overdue, and the reminder/escalation schedule"
)
async def stage_deadline(
    manuscript_id: str = Path(..., description="Manuscript ID"),
    services: Services = Depends(get_services),
) -> dict:
    return services.admin.manuscript_deadline(manuscript_id)


@router.get(
    "/{manuscript_id}/timeline",
    summary="Manuscript Timeline",
    description="Audit trail of stage transitions, reminders and escalations"
)
async def manuscript_timeline(
    manuscript_id: str = Path(..., description="Manuscript ID"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Return only the latest N events"),
    services: Services = Depends(get_services),
) -> dict:
    services.admin.require_manuscript(manuscript_id)
    events = services.event_log.timeline(manuscript_id)
    if limit:
        events = events[-limit:]
    return {
        "manuscript_id": manuscript_id,
        "events": [TimelineEventResponse.from_record(e) for e in events],
        "count": len(events),
    }
