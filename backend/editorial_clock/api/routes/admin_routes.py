"""
Administrative API Routes.

Provides endpoints for:
- Forcing a transition (through the same state machine as everything else)
- Running the deadline tick and the outbox dispatcher on demand
- Deadline statistics for the editorial dashboard
- Scheduler health and job control
- The recent audit timeline
"""
import asyncio
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field

from editorial_clock.models.domain import StageOccupancy
from editorial_clock.models.enums import EntityType
from editorial_clock.models.schemas import (
    InvitationResponse,
    OccupancyResponse,
    TickReportResponse,
    TimelineEventResponse,
)
from editorial_clock.services.container import Services, get_services
from editorial_clock.services.scheduler import get_scheduler


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# ==========================================
# PYDANTIC MODELS
# ==========================================

class ForceTransitionRequest(BaseModel):
    """Request body for a manual transition."""
    entity_type: EntityType = Field(..., description="manuscript or invitation")
    entity_id: str = Field(..., description="Manuscript or invitation ID")
    target_state: str = Field(
        ...,
        description="manuscript: a stage key, 'exited' or 'escalated'; invitation: reminded, accepted, declined or withdrawn"
    )
    actor_id: str = Field(..., description="Administrator performing the override")
    reason: Optional[str] = Field(None, description="Why the override was needed")


class ProcessDeadlinesRequest(BaseModel):
    """Optional override of the tick time (testing and backfills)."""
    now: Optional[datetime] = Field(None, description="Run the tick as of this instant")


# ==========================================
# OVERRIDES
# ==========================================

@router.post(
    "/force-transition",
    summary="Force Transition",
    description="Manually move a manuscript or invitation; timeline and fire-event bookkeeping still apply"
)
async def force_transition(
    body: ForceTransitionRequest,
    services: Services = Depends(get_services),
) -> dict:
    result = services.admin.force_transition(
        body.entity_type,
        body.entity_id,
        body.target_state,
        actor_id=body.actor_id,
        reason=body.reason,
    )
    serializer = OccupancyResponse if isinstance(result, StageOccupancy) else InvitationResponse
    return {
        "success": True,
        "entity_type": body.entity_type.value,
        "result": serializer.from_record(result),
    }


@router.post(
    "/deadlines/process",
    summary="Process Deadlines Now",
    description="Run one deadline tick immediately, same logic as the scheduled job"
)
async def process_deadlines(
    body: Optional[ProcessDeadlinesRequest] = None,
    services: Services = Depends(get_services),
) -> dict:
    report = await asyncio.to_thread(services.admin.run_tick_now, body.now if body else None)
    return {
        "success": True,
        "report": TickReportResponse(**report.to_dict()).model_dump(mode="json"),
    }


@router.get(
    "/deadlines/statistics",
    summary="Deadline Statistics",
    description="Invitations pending reminder/withdrawal, overdue manuscripts, frozen stages"
)
async def deadline_statistics(services: Services = Depends(get_services)) -> dict:
    return services.admin.deadline_statistics()


@router.post(
    "/notifications/dispatch",
    summary="Dispatch Notifications Now",
    description="Deliver every due outbox item immediately"
)
async def dispatch_notifications(services: Services = Depends(get_services)) -> dict:
    result = await services.dispatcher.process_outbox()
    return {"success": True, **result}


# ==========================================
# SCHEDULER
# ==========================================

@router.get(
    "/scheduler/health",
    summary="Scheduler Health",
    description="Job schedule, failure counts, paused jobs and the last tick report"
)
async def scheduler_health() -> dict:
    return get_scheduler().get_health_status()


def _job_action(job_id: str, action: str) -> dict:
    scheduler = get_scheduler()
    if not scheduler.is_running:
        raise HTTPException(status_code=503, detail="Scheduler is not running in this process")
    if job_id not in scheduler.jobs_config:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    handler = {
        "trigger": scheduler.trigger_job,
        "pause": scheduler.pause_job,
        "resume": scheduler.resume_job,
    }[action]
    if not handler(job_id):
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return {"success": True, "job_id": job_id, "action": action}


@router.post("/scheduler/jobs/{job_id}/trigger", summary="Trigger Job")
async def trigger_job(job_id: str = Path(..., description="Job ID")) -> dict:
    return _job_action(job_id, "trigger")


@router.post("/scheduler/jobs/{job_id}/pause", summary="Pause Job")
async def pause_job(job_id: str = Path(..., description="Job ID")) -> dict:
    return _job_action(job_id, "pause")


@router.post("/scheduler/jobs/{job_id}/resume", summary="Resume Job")
async def resume_job(job_id: str = Path(..., description="Job ID")) -> dict:
    return _job_action(job_id, "resume")


# ==========================================
# AUDIT
# ==========================================

@router.get(
    "/timeline/recent",
    summary="Recent Timeline",
    description="Most recent audit events across all manuscripts and invitations"
)
async def recent_timeline(
    limit: int = Query(50, ge=1, le=500, description="Number of events"),
    services: Services = Depends(get_services),
) -> dict:
    events = services.event_log.recent(limit)
    return {
        "events": [TimelineEventResponse.from_record(e) for e in events],
        "count": len(events),
    }
