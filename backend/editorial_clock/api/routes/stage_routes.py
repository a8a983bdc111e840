"""
Stage Configuration API Routes.

Lets editorial administrators view and change per-stage time limits and
reminder/escalation offsets. Changes apply to the next scheduler tick;
already-fired events are never re-sent.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field

from editorial_clock.models.schemas import StageDefinitionUpdate
from editorial_clock.services.container import Services, get_services


router = APIRouter(prefix="/api/stages", tags=["Stages"])


# ==========================================
# PYDANTIC MODELS
# ==========================================

class StageDefinitionInput(BaseModel):
    """One stage definition in a bulk upsert."""
    stage_key: str = Field(..., description="Kebab-case stage key, e.g. 'reviewer-review'")
    description: Optional[str] = Field(None, description="Human-readable stage name")
    time_limit_days: int = Field(..., description="Calendar days allowed in the stage")
    reminder_offset_days: List[int] = Field(default_factory=list, description="Days before the deadline")
    escalation_offset_days: List[int] = Field(default_factory=list, description="Days after the deadline")
    active: bool = Field(True, description="Inactive stages schedule nothing")


class BulkStageUpsert(BaseModel):
    """Request body for creating or replacing several stage definitions."""
    stages: List[StageDefinitionInput]
    actor_id: str = Field("admin", description="Who made the change")


class StageUpdateRequest(StageDefinitionUpdate):
    """Partial update plus the acting administrator."""
    actor_id: str = Field("admin", description="Who made the change")


class StageToggleRequest(BaseModel):
    actor_id: str = Field("admin", description="Who made the change")


# ==========================================
# ENDPOINTS
# ==========================================

@router.get(
    "",
    summary="List Stage Definitions",
    description="All configured stages, active and inactive"
)
async def list_stages(services: Services = Depends(get_services)) -> dict:
    stages = services.stage_config.list_stages()
    return {
        "stages": [s.model_dump(mode="json") for s in stages],
        "count": len(stages),
    }


@router.get(
    "/{stage_key}",
    summary="Get Stage Definition"
)
async def get_stage(
    stage_key: str = Path(..., description="Stage key"),
    services: Services = Depends(get_services),
) -> dict:
    return services.stage_config.get(stage_key).model_dump(mode="json")


@router.post(
    "",
    summary="Bulk Upsert Stage Definitions",
    description="Create or replace stage definitions; each stage succeeds or fails on its own"
)
async def bulk_upsert_stages(
    body: BulkStageUpsert,
    services: Services = Depends(get_services),
) -> dict:
    if not body.stages:
        raise HTTPException(status_code=400, detail="No stages provided")
    return services.stage_config.bulk_upsert(
        [s.model_dump() for s in body.stages],
        actor_id=body.actor_id,
    )


@router.put(
    "/{stage_key}",
    summary="Update Stage Definition",
    description="Change the time limit, offsets, description or active flag of one stage"
)
async def update_stage(
    body: StageUpdateRequest,
    stage_key: str = Path(..., description="Stage key"),
    services: Services = Depends(get_services),
) -> dict:
    fields = body.model_dump(exclude_unset=True, exclude={"actor_id"})
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    updated = services.stage_config.update(stage_key, actor_id=body.actor_id, **fields)
    return updated.model_dump(mode="json")


@router.post(
    "/{stage_key}/deactivate",
    summary="Deactivate Stage",
    description="Open occupancies of an inactive stage are frozen: nothing fires until it is reactivated"
)
async def deactivate_stage(
    body: Optional[StageToggleRequest] = None,
    stage_key: str = Path(..., description="Stage key"),
    services: Services = Depends(get_services),
) -> dict:
    actor_id = body.actor_id if body else "admin"
    return services.stage_config.deactivate(stage_key, actor_id=actor_id).model_dump(mode="json")


@router.post(
    "/{stage_key}/activate",
    summary="Activate Stage",
    description="Reactivating fires every fire time that elapsed while the stage was inactive"
)
async def activate_stage(
    body: Optional[StageToggleRequest] = None,
    stage_key: str = Path(..., description="Stage key"),
    services: Services = Depends(get_services),
) -> dict:
    actor_id = body.actor_id if body else "admin"
    return services.stage_config.activate(stage_key, actor_id=actor_id).model_dump(mode="json")
