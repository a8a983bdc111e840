"""
Domain records for the deadline engine.

These are plain dataclasses rather than Pydantic models: they are created
and compared on every tick, and their row form (to_row/from_row) is what the
Supabase store reads and writes.

Records:
- StageOccupancy: a manuscript being in one stage during one interval
- ReviewInvitation: one reviewer's request to review one manuscript (versioned for CAS)
- FireEvent: the "this reminder/escalation already happened" marker
- TimelineEvent: append-only audit record
- NotificationRequest / OutboxItem: queued outbound messages
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from .enums import (
    FireKind,
    InvitationState,
    NotificationStatus,
    ScopeType,
)


def new_id() -> str:
    return str(uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    # PostgREST returns "+00:00" offsets; older rows may carry "Z"
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


# ==========================================
# STAGE OCCUPANCY
# ==========================================

@dataclass
class StageOccupancy:
    """A manuscript's stay in one workflow stage."""
    manuscript_id: str
    stage_key: str
    entered_at: datetime
    exited_at: Optional[datetime] = None
    assignee_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    def closed(self, at: datetime) -> "StageOccupancy":
        return replace(self, exited_at=at)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "manuscript_id": self.manuscript_id,
            "stage_key": self.stage_key,
            "entered_at": _iso(self.entered_at),
            "exited_at": _iso(self.exited_at),
            "assignee_id": self.assignee_id,
        }

    @classmethod
    def from_row(cls, row: dict) -> "StageOccupancy":
        return cls(
            id=row["id"],
            manuscript_id=row["manuscript_id"],
            stage_key=row["stage_key"],
            entered_at=_parse(row["entered_at"]),
            exited_at=_parse(row.get("exited_at")),
            assignee_id=row.get("assignee_id"),
        )


# ==========================================
# REVIEW INVITATION
# ==========================================

@dataclass
class ReviewInvitation:
    """
    A reviewer invitation and its two deadlines.

    review_deadline stays None until state == accepted.
    version increments on every committed write (optimistic concurrency).
    """
    manuscript_id: str
    reviewer_id: str
    invited_at: datetime
    response_deadline: datetime
    state: InvitationState = InvitationState.INVITED
    reviewer_email: Optional[str] = None
    reviewer_name: Optional[str] = None
    reminded_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    review_deadline: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    version: int = 0
    id: str = field(default_factory=new_id)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "manuscript_id": self.manuscript_id,
            "reviewer_id": self.reviewer_id,
            "reviewer_email": self.reviewer_email,
            "reviewer_name": self.reviewer_name,
            "state": self.state.value,
            "invited_at": _iso(self.invited_at),
            "response_deadline": _iso(self.response_deadline),
            "reminded_at": _iso(self.reminded_at),
            "responded_at": _iso(self.responded_at),
            "review_deadline": _iso(self.review_deadline),
            "withdrawn_at": _iso(self.withdrawn_at),
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: dict) -> "ReviewInvitation":
        return cls(
            id=row["id"],
            manuscript_id=row["manuscript_id"],
            reviewer_id=row["reviewer_id"],
            reviewer_email=row.get("reviewer_email"),
            reviewer_name=row.get("reviewer_name"),
            state=InvitationState(row["state"]),
            invited_at=_parse(row["invited_at"]),
            response_deadline=_parse(row["response_deadline"]),
            reminded_at=_parse(row.get("reminded_at")),
            responded_at=_parse(row.get("responded_at")),
            review_deadline=_parse(row.get("review_deadline")),
            withdrawn_at=_parse(row.get("withdrawn_at")),
            version=int(row.get("version") or 0),
        )


# ==========================================
# FIRE EVENT
# ==========================================

@dataclass(frozen=True)
class FireEvent:
    """
    Idempotency marker for one reminder/escalation of one scope.

    Identity is (scope_type, scope_id, kind, offset_days); fire_at is
    derived from configuration and only informative.
    """
    scope_type: ScopeType
    scope_id: str
    kind: FireKind
    offset_days: int
    fire_at: datetime
    fired_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return fire_event_key(self.scope_type, self.scope_id, self.kind, self.offset_days)

    def claimed(self, at: datetime) -> "FireEvent":
        return replace(self, fired_at=at)

    def to_row(self) -> dict:
        return {
            "key": self.key,
            "scope_type": self.scope_type.value,
            "scope_id": self.scope_id,
            "kind": self.kind.value,
            "offset_days": self.offset_days,
            "fire_at": _iso(self.fire_at),
            "fired_at": _iso(self.fired_at),
        }

    @classmethod
    def from_row(cls, row: dict) -> "FireEvent":
        return cls(
            scope_type=ScopeType(row["scope_type"]),
            scope_id=row["scope_id"],
            kind=FireKind(row["kind"]),
            offset_days=int(row["offset_days"]),
            fire_at=_parse(row["fire_at"]),
            fired_at=_parse(row.get("fired_at")),
        )


def fire_event_key(scope_type: ScopeType, scope_id: str, kind: FireKind, offset_days: int) -> str:
    """Deterministic key shared by the fired marker and the notification idempotency key."""
    return f"{ScopeType(scope_type).value}:{scope_id}:{FireKind(kind).value}:{offset_days}"


# ==========================================
# TIMELINE
# ==========================================

@dataclass(frozen=True)
class TimelineEvent:
    """Append-only audit record. Never mutated or deleted."""
    entity_id: str
    entity_type: str
    action: str
    actor_id: str
    timestamp: datetime
    metadata: dict = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "action": self.action,
            "actor_id": self.actor_id,
            "timestamp": _iso(self.timestamp),
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: dict) -> "TimelineEvent":
        return cls(
            id=row["id"],
            entity_id=row["entity_id"],
            entity_type=row["entity_type"],
            action=row["action"],
            actor_id=row["actor_id"],
            timestamp=_parse(row["timestamp"]),
            metadata=row.get("metadata") or {},
        )


# ==========================================
# NOTIFICATIONS
# ==========================================

@dataclass(frozen=True)
class NotificationRequest:
    """send(template_key, recipient, payload, idempotency_key)"""
    template_key: str
    recipient: str
    payload: dict
    idempotency_key: str


@dataclass
class OutboxItem:
    """A queued notification awaiting (re)delivery."""
    request: NotificationRequest
    created_at: datetime
    next_attempt_at: datetime
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def idempotency_key(self) -> str:
        return self.request.idempotency_key

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.request.idempotency_key,
            "template_key": self.request.template_key,
            "recipient": self.request.recipient,
            "payload": self.request.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": _iso(self.created_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "sent_at": _iso(self.sent_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_row(cls, row: dict) -> "OutboxItem":
        return cls(
            id=row["id"],
            request=NotificationRequest(
                template_key=row["template_key"],
                recipient=row["recipient"],
                payload=row.get("payload") or {},
                idempotency_key=row["idempotency_key"],
            ),
            status=NotificationStatus(row["status"]),
            attempts=int(row.get("attempts") or 0),
            created_at=_parse(row["created_at"]),
            next_attempt_at=_parse(row["next_attempt_at"]),
            sent_at=_parse(row.get("sent_at")),
            last_error=row.get("last_error"),
        )
