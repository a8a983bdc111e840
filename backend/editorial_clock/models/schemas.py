"""
Pydantic schemas for data validation and serialization.
Covers stage configuration and the response shapes shared by the API routes.
"""
from datetime import datetime
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


# ==========================================
# STAGE DEFINITION
# ==========================================

class StageDefinition(BaseModel):
    """
    Per-stage time limit and its reminder/escalation offsets.

    Offsets may be submitted in any order; they are normalised so reminders
    run strictly decreasing (days before the deadline) and escalations
    strictly increasing (days after the deadline).
    """
    model_config = ConfigDict(frozen=True)

    stage_key: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$")
    description: Optional[str] = Field(None, max_length=500)
    time_limit_days: int = Field(..., gt=0)
    reminder_offset_days: tuple[int, ...] = ()
    escalation_offset_days: tuple[int, ...] = ()
    active: bool = True
    updated_at: Optional[datetime] = None

    @field_validator("reminder_offset_days", "escalation_offset_days")
    @classmethod
    def normalise_offsets(cls, value: tuple[int, ...], info: ValidationInfo) -> tuple[int, ...]:
        """Offsets are non-negative, listed once, and sorted toward/away from the deadline."""
        if any(offset < 0 for offset in value):
            raise ValueError("offsets must be non-negative integers")
        if len(set(value)) != len(value):
            raise ValueError("offsets must not contain duplicates")
        return tuple(sorted(value, reverse=info.field_name == "reminder_offset_days"))

    @model_validator(mode='after')
    def validate_reminders_within_limit(self) -> 'StageDefinition':
        """Every reminder must fall after the stage was entered."""
        too_far = [o for o in self.reminder_offset_days if o >= self.time_limit_days]
        if too_far:
            raise ValueError(
                f"reminder offsets {too_far} must be less than time_limit_days ({self.time_limit_days})"
            )
        return self

    def to_row(self) -> dict:
        return {
            "stage_key": self.stage_key,
            "description": self.description,
            "time_limit_days": self.time_limit_days,
            "reminder_offset_days": list(self.reminder_offset_days),
            "escalation_offset_days": list(self.escalation_offset_days),
            "active": self.active,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class StageDefinitionUpdate(BaseModel):
    """Partial update of a stage definition. Only these fields may change."""
    description: Optional[str] = Field(None, max_length=500)
    time_limit_days: Optional[int] = Field(None, gt=0)
    reminder_offset_days: Optional[list[int]] = None
    escalation_offset_days: Optional[list[int]] = None
    active: Optional[bool] = None


# ==========================================
# RESPONSE SCHEMAS
# ==========================================

class _RecordResponse(BaseModel):
    """Response built from a domain record's row form."""

    @classmethod
    def from_record(cls, record) -> dict:
        return cls(**record.to_row()).model_dump(mode="json")


class OccupancyResponse(_RecordResponse):
    id: str
    manuscript_id: str
    stage_key: str
    entered_at: datetime
    exited_at: Optional[datetime] = None
    assignee_id: Optional[str] = None


class InvitationResponse(_RecordResponse):
    id: str
    manuscript_id: str
    reviewer_id: str
    reviewer_email: Optional[str] = None
    reviewer_name: Optional[str] = None
    state: str
    invited_at: datetime
    response_deadline: datetime
    reminded_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    review_deadline: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    version: int


class TimelineEventResponse(_RecordResponse):
    id: str
    entity_id: str
    entity_type: str
    action: str
    actor_id: str
    timestamp: datetime
    metadata: dict = Field(default_factory=dict)


class TickReportResponse(BaseModel):
    """Summary of one scheduler tick."""
    ran_at: datetime
    reminders_fired: int
    escalations_fired: int
    withdrawals_fired: int
    skipped_duplicates: int
    frozen_occupancies: int
    conflicts: int
    errors: list[str] = Field(default_factory=list)
