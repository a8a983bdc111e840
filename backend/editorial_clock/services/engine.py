"""
Scheduler Loop: one tick of the deadline engine.

Per tick, for every open stage occupancy and every open invitation:
1. recompute the schedule from configuration (nothing speculative is stored)
2. for each fire time <= now that has not fired, claim it in the same
   commit as its transition (reminder, escalation, auto-withdrawal)
3. the commit queues the notification under the fire-event key; an
   escalation handler runs only in the tick whose claim committed

A lost claim (another tick or process got there first) is skipped. One
entity's failure is logged and counted; the tick carries on with the rest.
Missed fire times after downtime all fire, oldest first, each once.

The tick never sends anything itself: delivery happens when the
dispatcher drains the outbox.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

from ..core.clock import Clock, ensure_utc
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    EditorialClockException,
    FireEventAlreadyClaimed,
    InvalidTransition,
    StoreConflict,
    TooEarly,
)
from ..core.store import SchedulingStore, TransitionUnit
from ..models.domain import NotificationRequest, ReviewInvitation, StageOccupancy
from ..models.schemas import StageDefinition
from ..models.enums import (
    EntityType,
    FireKind,
    InvitationState,
    NotificationTemplate,
    ScopeType,
    TimelineAction,
)
from .deadlines import (
    ScheduledFire,
    compute_invitation_schedule,
    compute_schedule,
)
from .escalation import EscalationContext, EscalationRegistry
from .event_log import EventLog
from .invitations import InvitationService
from .notifications import notification_key
from .stage_config import StageConfigService


logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What one tick did."""
    ran_at: datetime
    reminders_fired: int = 0
    escalations_fired: int = 0
    withdrawals_fired: int = 0
    skipped_duplicates: int = 0
    frozen_occupancies: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def fired(self) -> int:
        return self.reminders_fired + self.escalations_fired + self.withdrawals_fired

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ran_at"] = self.ran_at.isoformat()
        return data


class DeadlineEngine:
    """Pure tick logic, callable from the APScheduler job, the admin API and tests."""

    def __init__(
        self,
        store: SchedulingStore,
        stage_config: StageConfigService,
        invitations: InvitationService,
        escalations: EscalationRegistry,
        event_log: EventLog,
        clock: Clock,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.stage_config = stage_config
        self.invitations = invitations
        self.escalations = escalations
        self.event_log = event_log
        self.clock = clock
        self.config = config or default_settings
        self.last_report: Optional[TickReport] = None

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = ensure_utc(now) if now else self.clock.now()
        report = TickReport(ran_at=now)

        for occupancy in self.store.list_open_occupancies():
            try:
                self._process_occupancy(occupancy, now, report)
            except Exception as e:
                self._record_error(report, f"occupancy {occupancy.id}", e)

        for invitation in self.store.list_open_invitations():
            try:
                self._process_invitation(invitation, now, report)
            except Exception as e:
                self._record_error(report, f"invitation {invitation.id}", e)

        if report.fired or report.errors or report.conflicts:
            logger.info(
                f"⏱️ Tick {now.isoformat()}: {report.reminders_fired} reminders, "
                f"{report.escalations_fired} escalations, {report.withdrawals_fired} withdrawals, "
                f"{report.skipped_duplicates} duplicates skipped, {report.conflicts} conflicts, "
                f"{len(report.errors)} errors"
            )
        else:
            logger.debug(f"⏱️ Tick {now.isoformat()}: nothing due")

        self.last_report = report
        return report

    # ==========================================
    # STAGE OCCUPANCIES
    # ==========================================

    def _process_occupancy(self, occupancy: StageOccupancy, now: datetime, report: TickReport) -> None:
        stage = self.stage_config.find(occupancy.stage_key)
        if stage is None:
            report.frozen_occupancies += 1
            logger.warning(
                f"⚠️ UnknownStage '{occupancy.stage_key}' for manuscript {occupancy.manuscript_id} "
                f"(occupancy {occupancy.id}); frozen until the stage is configured"
            )
            return
        if not stage.active:
            report.frozen_occupancies += 1
            logger.debug(f"Stage '{stage.stage_key}' inactive; occupancy {occupancy.id} frozen")
            return

        schedule = compute_schedule(stage, occupancy.entered_at, self.config.deadline_timezone)
        for fire in schedule.due(now):
            if self.store.has_fired(fire.to_fire_event(ScopeType.STAGE, occupancy.id).key):
                continue
            if not self._fire_stage_event(occupancy, stage, schedule.due_at, fire, now, report):
                # Occupancy closed underneath us: remaining fires are cancelled too
                if not self._still_open(occupancy.id):
                    return

    def escalate_now(
        self,
        occupancy: StageOccupancy,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> ScheduledFire:
        """
        Fire the next pending escalation of an open occupancy immediately.

        Uses the same claim as the tick, so the tick never fires that
        escalation again and the handler runs once.

        Raises:
            InvalidTransition: Every escalation of the stage has already fired
            StoreConflict: The claim was lost or the occupancy closed meanwhile
        """
        now = ensure_utc(now) if now else self.clock.now()
        stage = self.stage_config.get(occupancy.stage_key)
        schedule = compute_schedule(stage, occupancy.entered_at, self.config.deadline_timezone)

        pending = [
            fire for fire in schedule.escalation_times
            if not self.store.has_fired(fire.to_fire_event(ScopeType.STAGE, occupancy.id).key)
        ]
        if not pending:
            raise InvalidTransition(
                occupancy.manuscript_id,
                occupancy.stage_key,
                "escalate",
                message=f"No pending escalation for manuscript '{occupancy.manuscript_id}' in '{stage.stage_key}'",
            )

        fire = pending[0]
        report = TickReport(ran_at=now)
        if not self._fire_stage_event(occupancy, stage, schedule.due_at, fire, now, report, actor_id=actor_id):
            reason = "escalation_claimed" if report.skipped_duplicates else "occupancy_closed"
            raise StoreConflict(occupancy.id, reason)
        return fire

    def _fire_stage_event(
        self,
        occupancy: StageOccupancy,
        stage: StageDefinition,
        due_at: datetime,
        fire: ScheduledFire,
        now: datetime,
        report: TickReport,
        actor_id: Optional[str] = None,
    ) -> bool:
        """Claim one stage reminder or escalation. Returns False when the claim was lost."""
        fire_event = fire.to_fire_event(ScopeType.STAGE, occupancy.id)
        unit = TransitionUnit(
            at=now,
            fire_event=fire_event,
            require_open_occupancy_id=occupancy.id,
        )
        context = None
        if fire.kind == FireKind.REMINDER:
            unit.timeline.append(self.event_log.record(
                occupancy.manuscript_id, EntityType.MANUSCRIPT, TimelineAction.STAGE_REMINDER_SENT, now,
                actor_id=actor_id,
                stage_key=stage.stage_key,
                occupancy_id=occupancy.id,
                offset_days=fire.offset_days,
                due_at=due_at.isoformat(),
            ))
            unit.notifications.append(self._stage_reminder(occupancy, fire, due_at, fire_event.key))
        else:
            context = EscalationContext(
                occupancy=occupancy,
                stage=stage,
                fire=fire,
                due_at=due_at,
                now=now,
                idempotency_key=fire_event.key,
                editor_in_chief_email=self.config.editor_in_chief_email,
            )
            unit.timeline.append(self.event_log.record(
                occupancy.manuscript_id, EntityType.MANUSCRIPT, TimelineAction.STAGE_ESCALATED, now,
                actor_id=actor_id,
                stage_key=stage.stage_key,
                occupancy_id=occupancy.id,
                offset_days=fire.offset_days,
                escalation_level=context.escalation_level,
                due_at=due_at.isoformat(),
                overdue=True,
            ))

        if not self._claim(unit, report):
            return False

        if fire.kind == FireKind.REMINDER:
            report.reminders_fired += 1
        else:
            report.escalations_fired += 1
        logger.info(
            f"🔔 {fire.kind.value} {fire.offset_days}d fired for manuscript "
            f"{occupancy.manuscript_id} in '{stage.stage_key}'"
        )

        if context is not None:
            self._run_escalation_handler(context)
        return True

    def _stage_reminder(
        self,
        occupancy: StageOccupancy,
        fire: ScheduledFire,
        due_at: datetime,
        key: str,
    ) -> NotificationRequest:
        return NotificationRequest(
            template_key=NotificationTemplate.STAGE_DEADLINE_REMINDER.value,
            recipient=occupancy.assignee_id or self.config.editorial_office_email,
            payload={
                "manuscript_id": occupancy.manuscript_id,
                "stage_key": occupancy.stage_key,
                "due_at": due_at.isoformat(),
                "days_before": fire.offset_days,
            },
            idempotency_key=notification_key(key),
        )

    def _run_escalation_handler(self, context: EscalationContext) -> None:
        """Run the stage's handler for a claimed escalation and queue what it returns."""
        handler = self.escalations.handler_for(context.stage.stage_key)
        try:
            requests = list(handler(context) or [])
            if requests:
                self.store.commit(TransitionUnit(at=context.now, notifications=requests))
        except Exception as e:
            # The escalation stays claimed; only its notifications are lost
            logger.error(
                f"❌ Escalation handler for '{context.stage.stage_key}' failed "
                f"(manuscript {context.occupancy.manuscript_id}, offset {context.fire.offset_days}d): {e}",
                exc_info=True,
            )

    def _still_open(self, occupancy_id: str) -> bool:
        current = self.store.get_occupancy(occupancy_id)
        return current is not None and current.is_open

    # ==========================================
    # INVITATIONS
    # ==========================================

    def _process_invitation(self, invitation: ReviewInvitation, now: datetime, report: TickReport) -> None:
        schedule = compute_invitation_schedule(invitation, self.invitations.policy, self.config.deadline_timezone)
        if schedule is None:
            return

        for fire in schedule.due(now):
            fire_event = fire.to_fire_event(ScopeType.INVITATION, invitation.id)
            if self.store.has_fired(fire_event.key):
                continue
            try:
                if fire.kind == FireKind.REMINDER:
                    if invitation.state != InvitationState.INVITED:
                        continue
                    invitation = self.invitations.remind(invitation.id, at=now, fire_event=fire_event)
                    report.reminders_fired += 1
                else:
                    invitation = self.invitations.auto_withdraw(invitation.id, at=now, fire_event=fire_event)
                    report.withdrawals_fired += 1
            except FireEventAlreadyClaimed:
                report.skipped_duplicates += 1
                logger.debug(f"Fire event {fire_event.key} already claimed, skipping")
                invitation = self.store.get_invitation(invitation.id) or invitation
            except (InvalidTransition, TooEarly) as e:
                if self.store.has_fired(fire_event.key):
                    # Another ticker fired it between our read and our guard
                    report.skipped_duplicates += 1
                    invitation = self.store.get_invitation(invitation.id) or invitation
                    continue
                if e.details.get("current_state") in {s.value for s in InvitationState if s.is_terminal}:
                    # A human response won the race; nothing left to fire
                    logger.info(f"Invitation {invitation.id} closed before {fire.kind.value} fired ({e.message})")
                    return
                raise
            except StoreConflict as e:
                report.conflicts += 1
                logger.warning(f"⚠️ StoreConflict on invitation {invitation.id}: {e.reason}; retrying next tick")
                return

            if invitation.is_terminal:
                return

    # ==========================================
    # CLAIMS
    # ==========================================

    def _claim(self, unit: TransitionUnit, report: TickReport) -> bool:
        try:
            self.store.commit(unit)
            return True
        except FireEventAlreadyClaimed:
            report.skipped_duplicates += 1
            logger.debug(f"Fire event {unit.fire_event.key} already claimed, skipping")
            return False
        except StoreConflict as e:
            report.conflicts += 1
            logger.warning(f"⚠️ StoreConflict on {e.entity_id}: {e.reason}; retrying next tick")
            return False

    def _record_error(self, report: TickReport, scope: str, error: Exception) -> None:
        message = error.message if isinstance(error, EditorialClockException) else str(error)
        report.errors.append(f"{scope}: {message}")
        logger.error(f"❌ Tick failed for {scope}: {message}", exc_info=True)
