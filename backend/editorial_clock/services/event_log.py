"""
Event Log: append-only audit trail and fired-event lookups.

Timeline events are built here and written by the store as part of the
same commit as the transition they describe.
"""
import logging
from datetime import datetime
from typing import Optional

from ..core.store import SchedulingStore, TransitionUnit
from ..models.domain import FireEvent, TimelineEvent
from ..models.enums import EntityType, TimelineAction


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class EventLog:
    """Audit, debugging and duplicate-suppression reads over the store."""

    def __init__(self, store: SchedulingStore):
        self.store = store

    @staticmethod
    def record(
        entity_id: str,
        entity_type: EntityType | str,
        action: TimelineAction | str,
        at: datetime,
        actor_id: Optional[str] = None,
        **metadata,
    ) -> TimelineEvent:
        """Build a TimelineEvent; it is persisted by the unit it is attached to."""
        return TimelineEvent(
            entity_id=entity_id,
            entity_type=getattr(entity_type, "value", entity_type),
            action=getattr(action, "value", action),
            actor_id=actor_id or SYSTEM_ACTOR,
            timestamp=at,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    def append(self, event: TimelineEvent) -> TimelineEvent:
        """Write a standalone event (no accompanying transition)."""
        self.store.commit(TransitionUnit(at=event.timestamp, timeline=[event]))
        return event

    def timeline(self, entity_id: str) -> list[TimelineEvent]:
        return self.store.timeline(entity_id)

    def recent(self, limit: int = 50) -> list[TimelineEvent]:
        return self.store.recent_timeline(limit)

    def fired_events(self, scope_id: str) -> list[FireEvent]:
        return self.store.list_fire_events(scope_id)

    def has_fired(self, key: str) -> bool:
        return self.store.has_fired(key)
