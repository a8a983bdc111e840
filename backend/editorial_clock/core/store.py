"""
Scheduling store: the durable state behind the deadline engine.

Every state change goes through one write primitive, commit(TransitionUnit),
which applies all of its parts or none of them:

1. claim the fire event (unique on scope_type/scope_id/kind/offset_days)
2. check the open-occupancy guard
3. close and/or open a stage occupancy (one open occupancy per manuscript)
4. insert or compare-and-set a review invitation on its version
5. append timeline events
6. enqueue outbox notifications (unique on idempotency key, duplicates ignored)

Claiming the fired marker in the same unit as the transition it guards is
what makes a reminder/escalation exactly-once across concurrent ticks and
restarts.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from .exceptions import FireEventAlreadyClaimed, StoreConflict
from ..models.domain import (
    FireEvent,
    NotificationRequest,
    OutboxItem,
    ReviewInvitation,
    StageOccupancy,
    TimelineEvent,
)
from ..models.enums import NotificationStatus
from ..models.schemas import StageDefinition


logger = logging.getLogger(__name__)


@dataclass
class TransitionUnit:
    """One atomic state change, as handed to SchedulingStore.commit()."""
    at: datetime
    fire_event: Optional[FireEvent] = None
    require_open_occupancy_id: Optional[str] = None
    close_occupancy: Optional[StageOccupancy] = None
    open_occupancy: Optional[StageOccupancy] = None
    invitation: Optional[ReviewInvitation] = None
    # None = insert a new invitation; otherwise the version the writer read
    expected_version: Optional[int] = None
    timeline: list[TimelineEvent] = field(default_factory=list)
    notifications: list[NotificationRequest] = field(default_factory=list)


class SchedulingStore(ABC):
    """Persistence port for stages, occupancies, invitations, fire events, timeline and outbox."""

    # ---------- stage definitions ----------

    @abstractmethod
    def get_stage(self, stage_key: str) -> Optional[StageDefinition]: ...

    @abstractmethod
    def list_stages(self) -> list[StageDefinition]: ...

    @abstractmethod
    def upsert_stage(self, definition: StageDefinition) -> bool:
        """Insert or replace a stage definition. Returns True when it was created."""

    # ---------- occupancies ----------

    @abstractmethod
    def get_occupancy(self, occupancy_id: str) -> Optional[StageOccupancy]: ...

    @abstractmethod
    def get_open_occupancy(self, manuscript_id: str) -> Optional[StageOccupancy]: ...

    @abstractmethod
    def list_open_occupancies(self) -> list[StageOccupancy]: ...

    @abstractmethod
    def occupancy_history(self, manuscript_id: str) -> list[StageOccupancy]:
        """All occupancies of a manuscript ordered by entered_at."""

    # ---------- invitations ----------

    @abstractmethod
    def get_invitation(self, invitation_id: str) -> Optional[ReviewInvitation]: ...

    @abstractmethod
    def list_open_invitations(self) -> list[ReviewInvitation]:
        """Invitations in a non-terminal state (invited, reminded)."""

    @abstractmethod
    def list_invitations(self, manuscript_id: str) -> list[ReviewInvitation]: ...

    # ---------- fire events ----------

    @abstractmethod
    def has_fired(self, key: str) -> bool: ...

    @abstractmethod
    def list_fire_events(self, scope_id: Optional[str] = None) -> list[FireEvent]: ...

    # ---------- timeline ----------

    @abstractmethod
    def timeline(self, entity_id: str) -> list[TimelineEvent]: ...

    @abstractmethod
    def recent_timeline(self, limit: int = 50) -> list[TimelineEvent]: ...

    # ---------- outbox ----------

    @abstractmethod
    def due_notifications(self, now: datetime, limit: int = 50) -> list[OutboxItem]: ...

    @abstractmethod
    def list_notifications(self, status: Optional[NotificationStatus] = None) -> list[OutboxItem]: ...

    @abstractmethod
    def mark_notification_sent(self, item_id: str, at: datetime) -> None: ...

    @abstractmethod
    def mark_notification_failed(
        self,
        item_id: str,
        attempts: int,
        error: str,
        next_attempt_at: Optional[datetime],
    ) -> None:
        """Record a failed delivery. next_attempt_at=None means give up (status failed)."""

    # ---------- the write primitive ----------

    @abstractmethod
    def commit(self, unit: TransitionUnit) -> None:
        """Apply a TransitionUnit atomically."""


# ==========================================
# IN-MEMORY BACKEND
# ==========================================

class InMemorySchedulingStore(SchedulingStore):
    """
    Process-local store used for development and tests.

    A single re-entrant lock serialises commit(); every check runs before
    any write so a rejected unit leaves no trace.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._stages: dict[str, StageDefinition] = {}
        self._occupancies: dict[str, StageOccupancy] = {}
        self._invitations: dict[str, ReviewInvitation] = {}
        self._fired: dict[str, FireEvent] = {}
        self._timeline: list[TimelineEvent] = []
        self._outbox: dict[str, OutboxItem] = {}
        self._outbox_keys: set[str] = set()

    # ---------- stage definitions ----------

    def get_stage(self, stage_key: str) -> Optional[StageDefinition]:
        with self._lock:
            return self._stages.get(stage_key)

    def list_stages(self) -> list[StageDefinition]:
        with self._lock:
            return sorted(self._stages.values(), key=lambda s: s.stage_key)

    def upsert_stage(self, definition: StageDefinition) -> bool:
        with self._lock:
            created = definition.stage_key not in self._stages
            self._stages[definition.stage_key] = definition
            return created

    # ---------- occupancies ----------

    def get_occupancy(self, occupancy_id: str) -> Optional[StageOccupancy]:
        with self._lock:
            return self._occupancies.get(occupancy_id)

    def get_open_occupancy(self, manuscript_id: str) -> Optional[StageOccupancy]:
        with self._lock:
            for occupancy in self._occupancies.values():
                if occupancy.manuscript_id == manuscript_id and occupancy.is_open:
                    return occupancy
            return None

    def list_open_occupancies(self) -> list[StageOccupancy]:
        with self._lock:
            return sorted(
                (o for o in self._occupancies.values() if o.is_open),
                key=lambda o: o.entered_at,
            )

    def occupancy_history(self, manuscript_id: str) -> list[StageOccupancy]:
        with self._lock:
            return sorted(
                (o for o in self._occupancies.values() if o.manuscript_id == manuscript_id),
                key=lambda o: o.entered_at,
            )

    # ---------- invitations ----------

    def get_invitation(self, invitation_id: str) -> Optional[ReviewInvitation]:
        with self._lock:
            return self._invitations.get(invitation_id)

    def list_open_invitations(self) -> list[ReviewInvitation]:
        with self._lock:
            return sorted(
                (i for i in self._invitations.values() if not i.is_terminal),
                key=lambda i: i.invited_at,
            )

    def list_invitations(self, manuscript_id: str) -> list[ReviewInvitation]:
        with self._lock:
            return sorted(
                (i for i in self._invitations.values() if i.manuscript_id == manuscript_id),
                key=lambda i: i.invited_at,
            )

    # ---------- fire events ----------

    def has_fired(self, key: str) -> bool:
        with self._lock:
            return key in self._fired

    def list_fire_events(self, scope_id: Optional[str] = None) -> list[FireEvent]:
        with self._lock:
            events = [e for e in self._fired.values() if scope_id is None or e.scope_id == scope_id]
            return sorted(events, key=lambda e: (e.fire_at, e.kind.value, e.offset_days))

    # ---------- timeline ----------

    def timeline(self, entity_id: str) -> list[TimelineEvent]:
        with self._lock:
            return [e for e in self._timeline if e.entity_id == entity_id]

    def recent_timeline(self, limit: int = 50) -> list[TimelineEvent]:
        with self._lock:
            return list(reversed(self._timeline[-limit:])) if limit > 0 else []

    # ---------- outbox ----------

    def due_notifications(self, now: datetime, limit: int = 50) -> list[OutboxItem]:
        with self._lock:
            due = [
                replace(item) for item in self._outbox.values()
                if item.status == NotificationStatus.PENDING and item.next_attempt_at <= now
            ]
            due.sort(key=lambda item: (item.next_attempt_at, item.created_at))
            return due[:limit]

    def list_notifications(self, status: Optional[NotificationStatus] = None) -> list[OutboxItem]:
        with self._lock:
            items = [replace(i) for i in self._outbox.values() if status is None or i.status == status]
            return sorted(items, key=lambda i: i.created_at)

    def mark_notification_sent(self, item_id: str, at: datetime) -> None:
        with self._lock:
            item = self._outbox[item_id]
            item.status = NotificationStatus.SENT
            item.attempts += 1
            item.sent_at = at
            item.last_error = None

    def mark_notification_failed(
        self,
        item_id: str,
        attempts: int,
        error: str,
        next_attempt_at: Optional[datetime],
    ) -> None:
        with self._lock:
            item = self._outbox[item_id]
            item.attempts = attempts
            item.last_error = error
            if next_attempt_at is None:
                item.status = NotificationStatus.FAILED
            else:
                item.next_attempt_at = next_attempt_at

    # ---------- the write primitive ----------

    def commit(self, unit: TransitionUnit) -> None:
        with self._lock:
            self._check(unit)
            self._apply(unit)

    def _check(self, unit: TransitionUnit) -> None:
        if unit.fire_event is not None and unit.fire_event.key in self._fired:
            raise FireEventAlreadyClaimed(unit.fire_event.key)

        if unit.require_open_occupancy_id is not None:
            guarded = self._occupancies.get(unit.require_open_occupancy_id)
            if guarded is None or not guarded.is_open:
                raise StoreConflict(unit.require_open_occupancy_id, "occupancy_closed")

        if unit.close_occupancy is not None:
            current = self._occupancies.get(unit.close_occupancy.id)
            if current is None or not current.is_open:
                raise StoreConflict(unit.close_occupancy.id, "occupancy_closed")

        if unit.open_occupancy is not None:
            manuscript_id = unit.open_occupancy.manuscript_id
            closing = unit.close_occupancy.id if unit.close_occupancy else None
            for occupancy in self._occupancies.values():
                if occupancy.manuscript_id == manuscript_id and occupancy.is_open and occupancy.id != closing:
                    raise StoreConflict(manuscript_id, "open_occupancy_exists")

        if unit.invitation is not None:
            current = self._invitations.get(unit.invitation.id)
            if unit.expected_version is None:
                if current is not None:
                    raise StoreConflict(unit.invitation.id, "invitation_exists")
            elif current is None or current.version != unit.expected_version:
                raise StoreConflict(unit.invitation.id, "version_mismatch")

    def _apply(self, unit: TransitionUnit) -> None:
        if unit.fire_event is not None:
            claimed = unit.fire_event if unit.fire_event.fired_at else unit.fire_event.claimed(unit.at)
            self._fired[claimed.key] = claimed
        if unit.close_occupancy is not None:
            self._occupancies[unit.close_occupancy.id] = unit.close_occupancy
        if unit.open_occupancy is not None:
            self._occupancies[unit.open_occupancy.id] = unit.open_occupancy
        if unit.invitation is not None:
            self._invitations[unit.invitation.id] = unit.invitation
        self._timeline.extend(unit.timeline)
        for request in unit.notifications:
            if request.idempotency_key in self._outbox_keys:
                logger.debug(f"Outbox already holds {request.idempotency_key}, skipping")
                continue
            item = OutboxItem(request=request, created_at=unit.at, next_attempt_at=unit.at)
            self._outbox[item.id] = item
            self._outbox_keys.add(request.idempotency_key)


# ==========================================
# PROCESS-WIDE STORE
# ==========================================

_store: Optional[SchedulingStore] = None
_store_lock = threading.Lock()


def get_store() -> SchedulingStore:
    """Get the configured store, building it on first use."""
    global _store
    with _store_lock:
        if _store is None:
            from .config import settings

            if settings.uses_supabase:
                from .database import SupabaseSchedulingStore
                _store = SupabaseSchedulingStore()
            else:
                _store = InMemorySchedulingStore()
            logger.info(f"🗄️ Scheduling store: {type(_store).__name__}")
        return _store


def set_store(store: Optional[SchedulingStore]) -> Optional[SchedulingStore]:
    """Replace the process-wide store (tests, alternative backends)."""
    global _store
    with _store_lock:
        _store = store
        return store
