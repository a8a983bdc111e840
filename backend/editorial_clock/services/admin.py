"""
Administrative Query/Override API.

Overrides go through the same state-machine operations as editorial and
timer actions, never raw field writes, so the timeline and fire-event
bookkeeping look the same whoever triggered the transition.
"""
import logging
from datetime import datetime
from typing import Optional

from ..core.clock import Clock
from ..core.exceptions import InvalidTransition, NotFoundError
from ..core.store import SchedulingStore
from ..models.domain import ReviewInvitation, StageOccupancy
from ..models.enums import Decision, EntityType, InvitationState, ScopeType
from .deadlines import (
    compute_invitation_schedule,
    compute_schedule,
    time_remaining,
    withdrawal_not_before,
)
from .engine import DeadlineEngine, TickReport
from .event_log import EventLog
from .invitations import InvitationService
from .stage_config import StageConfigService
from .stage_tracker import StageTracker


logger = logging.getLogger(__name__)

EXITED = "exited"
ESCALATED = "escalated"


class AdminService:
    """forceTransition plus the deadline queries and "run now" actions."""

    def __init__(
        self,
        store: SchedulingStore,
        stage_config: StageConfigService,
        tracker: StageTracker,
        invitations: InvitationService,
        engine: DeadlineEngine,
        event_log: EventLog,
        clock: Clock,
    ):
        self.store = store
        self.stage_config = stage_config
        self.tracker = tracker
        self.invitations = invitations
        self.engine = engine
        self.event_log = event_log
        self.clock = clock

    # ==========================================
    # OVERRIDES
    # ==========================================

    def force_transition(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        target_state: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> StageOccupancy | ReviewInvitation:
        """
        Manually trigger a transition.

        manuscript: target is a stage key (enterStage), "exited", or "escalated"
        (fire the next pending stage escalation now, through the normal claim).
        invitation: reminded | accepted | declined | withdrawn ("escalate now").
        """
        entity_type = EntityType(entity_type)
        logger.info(f"🛠️ force_transition {entity_type.value} {entity_id} → {target_state} by {actor_id}")

        if entity_type == EntityType.MANUSCRIPT:
            if target_state == EXITED:
                return self.tracker.exit_pipeline(entity_id, actor_id=actor_id, reason=reason)
            if target_state == ESCALATED:
                occupancy = self.tracker.current_occupancy(entity_id)
                self.engine.escalate_now(occupancy, actor_id=actor_id)
                return occupancy
            return self.tracker.enter_stage(entity_id, target_state, actor_id=actor_id)

        if entity_type == EntityType.INVITATION:
            try:
                target = InvitationState(target_state)
            except ValueError:
                target = None
            if target == InvitationState.REMINDED:
                return self.invitations.remind(entity_id, actor_id=actor_id)
            if target == InvitationState.ACCEPTED:
                return self.invitations.respond(entity_id, Decision.ACCEPT, actor_id=actor_id, reason=reason)
            if target == InvitationState.DECLINED:
                return self.invitations.respond(entity_id, Decision.DECLINE, actor_id=actor_id, reason=reason)
            if target == InvitationState.WITHDRAWN:
                return self.invitations.auto_withdraw(entity_id, actor_id=actor_id, enforce_deadline=False)
            current = self.invitations.get(entity_id)
            raise InvalidTransition(entity_id, current.state.value, target_state)

        raise InvalidTransition(entity_id, entity_type.value, target_state,
                                message=f"Cannot force a transition on a {entity_type.value}")

    def run_tick_now(self, now: Optional[datetime] = None) -> TickReport:
        """Process deadlines immediately, same logic as the scheduled tick."""
        return self.engine.tick(now)

    # ==========================================
    # QUERIES
    # ==========================================

    def manuscript_deadline(self, manuscript_id: str) -> dict:
        """Current stage, due date, days remaining/overdue and its fire schedule."""
        now = self.clock.now()
        occupancy = self.tracker.current_occupancy(manuscript_id)
        stage = self.stage_config.get(occupancy.stage_key)
        schedule = compute_schedule(stage, occupancy.entered_at, self.engine.config.deadline_timezone)
        fired = {e.key for e in self.event_log.fired_events(occupancy.id)}

        return {
            "manuscript_id": manuscript_id,
            "occupancy_id": occupancy.id,
            "stage_key": occupancy.stage_key,
            "stage_active": stage.active,
            "entered_at": occupancy.entered_at.isoformat(),
            "deadline": time_remaining(schedule.due_at, now).to_dict(),
            "schedule": [
                {
                    "kind": f.kind.value,
                    "offset_days": f.offset_days,
                    "fire_at": f.fire_at.isoformat(),
                    "fired": f.to_fire_event(ScopeType.STAGE, occupancy.id).key in fired,
                }
                for f in schedule.fire_events()
            ],
            "next_fire": next(
                (
                    {"kind": f.kind.value, "offset_days": f.offset_days, "fire_at": f.fire_at.isoformat()}
                    for f in schedule.upcoming(now)
                ),
                None,
            ) if stage.active else None,
        }

    def invitation_deadline(self, invitation_id: str) -> dict:
        """Response and review deadline statuses for one invitation."""
        now = self.clock.now()
        invitation = self.invitations.get(invitation_id)
        schedule = compute_invitation_schedule(
            invitation, self.invitations.policy, self.engine.config.deadline_timezone
        )
        return {
            "invitation_id": invitation.id,
            "state": invitation.state.value,
            "response_deadline": time_remaining(invitation.response_deadline, now).to_dict(),
            "review_deadline": (
                time_remaining(invitation.review_deadline, now).to_dict()
                if invitation.review_deadline else None
            ),
            "withdrawal_at": (
                withdrawal_not_before(invitation, self.invitations.policy, self.engine.config.deadline_timezone).isoformat()
                if schedule else None
            ),
            "fired_events": [e.key for e in self.event_log.fired_events(invitation.id)],
        }

    def deadline_statistics(self) -> dict:
        """Counts for the admin dashboard."""
        now = self.clock.now()
        open_invitations = self.store.list_open_invitations()
        pending_reminders = sum(
            1 for i in open_invitations
            if i.state == InvitationState.INVITED and i.response_deadline <= now
        )
        pending_withdrawals = sum(
            1 for i in open_invitations
            if i.state == InvitationState.REMINDED
            and withdrawal_not_before(i, self.invitations.policy, self.engine.config.deadline_timezone) <= now
        )

        overdue = 0
        frozen = 0
        for occupancy in self.store.list_open_occupancies():
            stage = self.stage_config.find(occupancy.stage_key)
            if stage is None or not stage.active:
                frozen += 1
                continue
            due_at = compute_schedule(stage, occupancy.entered_at, self.engine.config.deadline_timezone).due_at
            if due_at < now:
                overdue += 1

        last = self.engine.last_report
        return {
            "pending_reminders": pending_reminders,
            "pending_withdrawals": pending_withdrawals,
            "total_pending": pending_reminders + pending_withdrawals,
            "open_invitations": len(open_invitations),
            "overdue_manuscripts": overdue,
            "frozen_occupancies": frozen,
            "last_check": last.ran_at.isoformat() if last else None,
        }

    def require_manuscript(self, manuscript_id: str) -> None:
        if not self.tracker.history(manuscript_id):
            raise NotFoundError("manuscript", manuscript_id)
