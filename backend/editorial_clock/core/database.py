"""
Supabase-backed scheduling store.

Features:
- Every TransitionUnit is applied by the commit_transition database
  function, so the whole unit commits or rolls back in one Postgres transaction
- Unique constraints do the serialisation: fire_events.key and the partial
  unique index on open occupancies reject a concurrent second writer
- Optimistic concurrency on review_invitations.version

Table layout and the function live in backend/supabase/schema.sql.
"""
import logging
import re
from datetime import datetime
from typing import Optional

from supabase import create_client, Client

from .config import settings
from .exceptions import (
    ConfigurationError,
    DatabaseError,
    FireEventAlreadyClaimed,
    StoreConflict,
)
from .store import SchedulingStore, TransitionUnit
from ..models.domain import (
    FireEvent,
    OutboxItem,
    ReviewInvitation,
    StageOccupancy,
    TimelineEvent,
)
from ..models.enums import InvitationState, NotificationStatus
from ..models.schemas import StageDefinition


logger = logging.getLogger(__name__)

OPEN_STATES = [InvitationState.INVITED.value, InvitationState.REMINDED.value]

# commit_transition raises 'store_conflict:<reason>:<entity id>'
STORE_CONFLICT_PATTERN = re.compile(r"store_conflict:([a-z_]+):([\w:.\-]+)")


class SupabaseClient:
    """
    Singleton wrapper for the Supabase client.
    Uses the service role key: the scheduler writes on behalf of the system.
    """

    _instance: Optional["SupabaseClient"] = None
    _client: Optional[Client] = None

    def __new__(cls) -> "SupabaseClient":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is None:
            if not settings.supabase_url:
                raise ConfigurationError(
                    "SUPABASE_URL is required when STORE_BACKEND=supabase",
                    config_key="supabase_url",
                )
            if not settings.supabase_service_role_key:
                raise ConfigurationError(
                    "SUPABASE_SERVICE_ROLE_KEY is required when STORE_BACKEND=supabase",
                    config_key="supabase_service_role_key",
                )
            self._client = create_client(
                settings.supabase_url,
                settings.supabase_service_role_key
            )

    @property
    def client(self) -> Client:
        """Get the Supabase client instance."""
        if self._client is None:
            raise RuntimeError("Supabase client not initialized")
        return self._client


class SupabaseSchedulingStore(SchedulingStore):
    """SchedulingStore over the Supabase REST API."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = SupabaseClient().client
        return self._client

    # ==========================================
    # STAGE DEFINITIONS
    # ==========================================

    def get_stage(self, stage_key: str) -> Optional[StageDefinition]:
        response = self.client.table("stage_definitions").select("*").eq("stage_key", stage_key).execute()
        return StageDefinition.model_validate(response.data[0]) if response.data else None

    def list_stages(self) -> list[StageDefinition]:
        response = self.client.table("stage_definitions").select("*").order("stage_key").execute()
        return [StageDefinition.model_validate(row) for row in response.data or []]

    def upsert_stage(self, definition: StageDefinition) -> bool:
        created = self.get_stage(definition.stage_key) is None
        self.client.table("stage_definitions").upsert(
            definition.to_row(),
            on_conflict="stage_key"
        ).execute()
        return created

    # ==========================================
    # OCCUPANCIES
    # ==========================================

    def get_occupancy(self, occupancy_id: str) -> Optional[StageOccupancy]:
        response = self.client.table("stage_occupancies").select("*").eq("id", occupancy_id).execute()
        return StageOccupancy.from_row(response.data[0]) if response.data else None

    def get_open_occupancy(self, manuscript_id: str) -> Optional[StageOccupancy]:
        response = (
            self.client.table("stage_occupancies")
            .select("*")
            .eq("manuscript_id", manuscript_id)
            .is_("exited_at", "null")
            .limit(1)
            .execute()
        )
        return StageOccupancy.from_row(response.data[0]) if response.data else None

    def list_open_occupancies(self) -> list[StageOccupancy]:
        response = (
            self.client.table("stage_occupancies")
            .select("*")
            .is_("exited_at", "null")
            .order("entered_at")
            .execute()
        )
        return [StageOccupancy.from_row(row) for row in response.data or []]

    def occupancy_history(self, manuscript_id: str) -> list[StageOccupancy]:
        response = (
            self.client.table("stage_occupancies")
            .select("*")
            .eq("manuscript_id", manuscript_id)
            .order("entered_at")
            .execute()
        )
        return [StageOccupancy.from_row(row) for row in response.data or []]

    # ==========================================
    # INVITATIONS
    # ==========================================

    def get_invitation(self, invitation_id: str) -> Optional[ReviewInvitation]:
        response = self.client.table("review_invitations").select("*").eq("id", invitation_id).execute()
        return ReviewInvitation.from_row(response.data[0]) if response.data else None

    def list_open_invitations(self) -> list[ReviewInvitation]:
        response = (
            self.client.table("review_invitations")
            .select("*")
            .in_("state", OPEN_STATES)
            .order("invited_at")
            .execute()
        )
        return [ReviewInvitation.from_row(row) for row in response.data or []]

    def list_invitations(self, manuscript_id: str) -> list[ReviewInvitation]:
        response = (
            self.client.table("review_invitations")
            .select("*")
            .eq("manuscript_id", manuscript_id)
            .order("invited_at")
            .execute()
        )
        return [ReviewInvitation.from_row(row) for row in response.data or []]

    # ==========================================
    # FIRE EVENTS
    # ==========================================

    def has_fired(self, key: str) -> bool:
        response = self.client.table("fire_events").select("key").eq("key", key).execute()
        return bool(response.data)

    def list_fire_events(self, scope_id: Optional[str] = None) -> list[FireEvent]:
        query = self.client.table("fire_events").select("*")
        if scope_id is not None:
            query = query.eq("scope_id", scope_id)
        response = query.order("fire_at").execute()
        return [FireEvent.from_row(row) for row in response.data or []]

    # ==========================================
    # TIMELINE
    # ==========================================

    def timeline(self, entity_id: str) -> list[TimelineEvent]:
        response = (
            self.client.table("timeline_events")
            .select("*")
            .eq("entity_id", entity_id)
            .order("seq")
            .execute()
        )
        return [TimelineEvent.from_row(row) for row in response.data or []]

    def recent_timeline(self, limit: int = 50) -> list[TimelineEvent]:
        response = (
            self.client.table("timeline_events")
            .select("*")
            .order("seq", desc=True)
            .limit(limit)
            .execute()
        )
        return [TimelineEvent.from_row(row) for row in response.data or []]

    # ==========================================
    # OUTBOX
    # ==========================================

    def due_notifications(self, now: datetime, limit: int = 50) -> list[OutboxItem]:
        response = (
            self.client.table("notification_outbox")
            .select("*")
            .eq("status", NotificationStatus.PENDING.value)
            .lte("next_attempt_at", now.isoformat())
            .order("next_attempt_at")
            .limit(limit)
            .execute()
        )
        return [OutboxItem.from_row(row) for row in response.data or []]

    def list_notifications(self, status: Optional[NotificationStatus] = None) -> list[OutboxItem]:
        query = self.client.table("notification_outbox").select("*")
        if status is not None:
            query = query.eq("status", status.value)
        response = query.order("created_at").execute()
        return [OutboxItem.from_row(row) for row in response.data or []]

    def mark_notification_sent(self, item_id: str, at: datetime) -> None:
        current = self.client.table("notification_outbox").select("attempts").eq("id", item_id).execute()
        attempts = int(current.data[0]["attempts"]) if current.data else 0
        self.client.table("notification_outbox").update({
            "status": NotificationStatus.SENT.value,
            "attempts": attempts + 1,
            "sent_at": at.isoformat(),
            "last_error": None,
        }).eq("id", item_id).execute()

    def mark_notification_failed(
        self,
        item_id: str,
        attempts: int,
        error: str,
        next_attempt_at: Optional[datetime],
    ) -> None:
        update = {"attempts": attempts, "last_error": error[:1000]}
        if next_attempt_at is None:
            update["status"] = NotificationStatus.FAILED.value
        else:
            update["next_attempt_at"] = next_attempt_at.isoformat()
        self.client.table("notification_outbox").update(update).eq("id", item_id).execute()

    # ==========================================
    # COMMIT
    # ==========================================

    def commit(self, unit: TransitionUnit) -> None:
        """
        Apply a TransitionUnit through the commit_transition database function.

        The function runs in a single Postgres transaction: the fire event
        claim, occupancy guard and writes, invitation CAS, timeline rows and
        outbox rows all land together or not at all.

        Raises:
            FireEventAlreadyClaimed: Another writer already claimed the fire event
            StoreConflict: Occupancy closed, second open occupancy, or version mismatch
            DatabaseError: Any other failure, with nothing written
        """
        try:
            self.client.rpc("commit_transition", self._transition_params(unit)).execute()
        except Exception as e:
            match = STORE_CONFLICT_PATTERN.search(str(e))
            if match is None:
                logger.error(f"❌ commit_transition failed: {e}")
                raise DatabaseError(
                    "Failed to commit transition",
                    table="commit_transition",
                    operation="rpc",
                    original_error=str(e),
                )
            reason, entity_id = match.groups()
            if reason == "fire_event_claimed":
                raise FireEventAlreadyClaimed(entity_id)
            raise StoreConflict(entity_id, reason)

    def _transition_params(self, unit: TransitionUnit) -> dict:
        """Arguments for commit_transition, one JSON value per part of the unit."""
        fire_event = None
        if unit.fire_event is not None:
            claimed = unit.fire_event if unit.fire_event.fired_at else unit.fire_event.claimed(unit.at)
            fire_event = claimed.to_row()

        close_occupancy = None
        if unit.close_occupancy is not None:
            close_occupancy = {
                "id": unit.close_occupancy.id,
                "exited_at": (unit.close_occupancy.exited_at or unit.at).isoformat(),
            }

        return {
            "p_fire_event": fire_event,
            "p_require_open_occupancy_id": unit.require_open_occupancy_id,
            "p_close_occupancy": close_occupancy,
            "p_open_occupancy": unit.open_occupancy.to_row() if unit.open_occupancy else None,
            "p_invitation": unit.invitation.to_row() if unit.invitation else None,
            "p_expected_version": unit.expected_version,
            "p_timeline": [event.to_row() for event in unit.timeline],
            "p_notifications": [
                OutboxItem(request=request, created_at=unit.at, next_attempt_at=unit.at).to_row()
                for request in unit.notifications
            ],
        }
