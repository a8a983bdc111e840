# Data models - Enums, domain records and Pydantic Schemas
from .enums import (
    Decision,
    EntityType,
    FireKind,
    InvitationState,
    NotificationStatus,
    NotificationTemplate,
    ScopeType,
    TimelineAction,
)
from .domain import (
    FireEvent,
    NotificationRequest,
    OutboxItem,
    ReviewInvitation,
    StageOccupancy,
    TimelineEvent,
    fire_event_key,
)
from .schemas import (
    StageDefinition,
    StageDefinitionUpdate,
)

__all__ = [
    # Enums
    "Decision",
    "EntityType",
    "FireKind",
    "InvitationState",
    "NotificationStatus",
    "NotificationTemplate",
    "ScopeType",
    "TimelineAction",
    # Domain records
    "FireEvent",
    "NotificationRequest",
    "OutboxItem",
    "ReviewInvitation",
    "StageOccupancy",
    "TimelineEvent",
    "fire_event_key",
    # Stage configuration
    "StageDefinition",
    "StageDefinitionUpdate",
]
