"""
Invitation State Machine.

    invited ──remind──▶ reminded ──autoWithdraw──▶ withdrawn     (timer path)
    invited/reminded ──respond──▶ accepted | declined            (human path)

accepted, declined and withdrawn are terminal.

Every transition is one compare-and-set on the invitation's version, so a
human response and a timer withdrawal racing on the same invitation end
with exactly one winner: the loser re-reads, finds a terminal state and
fails its guard instead of overwriting it.

Timer transitions (remind, auto_withdraw) claim the invitation's fire event
in the same commit. Called from the admin surface without a fire event,
they claim the same key themselves so the timer never repeats them.
"""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from ..core.clock import Clock, ensure_utc
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    FireEventAlreadyClaimed,
    InvalidTransition,
    NotFoundError,
    StoreConflict,
    TooEarly,
)
from ..core.store import SchedulingStore, TransitionUnit
from ..models.domain import FireEvent, NotificationRequest, ReviewInvitation
from ..models.enums import (
    Decision,
    EntityType,
    FireKind,
    InvitationState,
    NotificationTemplate,
    ScopeType,
    TimelineAction,
)
from .deadlines import (
    InvitationPolicy,
    add_calendar_days,
    compute_invitation_schedule,
    withdrawal_not_before,
)
from .event_log import EventLog
from .notifications import invitation_key, notification_key
from .response_links import build_response_links, validate_response_token


logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3
NO_LONGER_OPEN = "This invitation is no longer open"


class InvitationService:
    """invite / remind / respond / autoWithdraw"""

    def __init__(
        self,
        store: SchedulingStore,
        event_log: EventLog,
        clock: Clock,
        policy: Optional[InvitationPolicy] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.event_log = event_log
        self.clock = clock
        self.policy = policy or InvitationPolicy()
        self.config = config or default_settings

    # ==========================================
    # READS
    # ==========================================

    def get(self, invitation_id: str) -> ReviewInvitation:
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None:
            raise NotFoundError("invitation", invitation_id)
        return invitation

    def for_manuscript(self, manuscript_id: str) -> list[ReviewInvitation]:
        return self.store.list_invitations(manuscript_id)

    # ==========================================
    # TRANSITIONS
    # ==========================================

    def invite(
        self,
        manuscript_id: str,
        reviewer_id: str,
        at: Optional[datetime] = None,
        actor_id: str = "system",
        reviewer_email: Optional[str] = None,
        reviewer_name: Optional[str] = None,
    ) -> ReviewInvitation:
        """Create an invitation in state invited with responseDeadline = at + 7d."""
        at = ensure_utc(at) if at else self.clock.now()
        invitation = ReviewInvitation(
            manuscript_id=manuscript_id,
            reviewer_id=reviewer_id,
            reviewer_email=reviewer_email,
            reviewer_name=reviewer_name,
            invited_at=at,
            response_deadline=add_calendar_days(at, self.policy.response_days, self.config.deadline_timezone),
            version=1,
        )
        unit = TransitionUnit(
            at=at,
            invitation=invitation,
            timeline=[self._record(invitation, TimelineAction.INVITATION_SENT, at, actor_id,
                                   reviewer_id=reviewer_id,
                                   response_deadline=invitation.response_deadline.isoformat())],
            notifications=[NotificationRequest(
                template_key=NotificationTemplate.REVIEW_INVITATION.value,
                recipient=self._reviewer_address(invitation),
                payload={
                    **self._reviewer_payload(invitation),
                    **build_response_links(invitation),
                },
                idempotency_key=invitation_key(invitation.id, InvitationState.INVITED.value),
            )],
        )
        self.store.commit(unit)
        logger.info(f"✉️ Invited reviewer {reviewer_id} to manuscript {manuscript_id} ({invitation.id})")
        return invitation

    def remind(
        self,
        invitation_id: str,
        at: Optional[datetime] = None,
        fire_event: Optional[FireEvent] = None,
        actor_id: str = "system",
    ) -> ReviewInvitation:
        """
        invited -> reminded.

        Raises:
            InvalidTransition: already reminded or terminal
            FireEventAlreadyClaimed: the reminder already fired
            StoreConflict: a concurrent write changed the invitation
        """
        at = ensure_utc(at) if at else self.clock.now()
        invitation = self.get(invitation_id)
        self._require_state(invitation, "remind", InvitationState.INVITED)
        fire_event = fire_event or self._fire_event(invitation, FireKind.REMINDER)

        updated = replace(invitation, state=InvitationState.REMINDED, reminded_at=at, version=invitation.version + 1)
        unit = TransitionUnit(
            at=at,
            fire_event=fire_event,
            invitation=updated,
            expected_version=invitation.version,
            timeline=[self._record(updated, TimelineAction.INVITATION_REMINDED, at, actor_id,
                                   fire_event=fire_event.key)],
            notifications=[NotificationRequest(
                template_key=NotificationTemplate.REVIEW_INVITATION_REMINDER.value,
                recipient=self._reviewer_address(updated),
                payload={
                    **self._reviewer_payload(updated),
                    "withdrawal_at": withdrawal_not_before(updated, self.policy, self.config.deadline_timezone).isoformat(),
                    **build_response_links(updated),
                },
                idempotency_key=notification_key(fire_event.key),
            )],
        )
        self._commit_timer(unit, invitation_id, "remind", InvitationState.INVITED)
        logger.info(f"🔔 Reminded reviewer {invitation.reviewer_id} on invitation {invitation_id} ({actor_id})")
        return updated

    def respond(
        self,
        invitation_id: str,
        decision: Decision | str,
        at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        alternative_reviewers: Optional[list[str]] = None,
    ) -> ReviewInvitation:
        """
        invited|reminded -> accepted|declined. Human path, wins over the timer.

        Re-reads and retries on a lost compare-and-set; once the invitation is
        terminal the caller gets "This invitation is no longer open".
        """
        decision = Decision(decision)
        at = ensure_utc(at) if at else self.clock.now()

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            invitation = self.get(invitation_id)
            self._require_state(invitation, decision.value, InvitationState.INVITED, InvitationState.REMINDED)
            actor = actor_id or invitation.reviewer_id

            if decision == Decision.ACCEPT:
                updated = replace(
                    invitation,
                    state=InvitationState.ACCEPTED,
                    responded_at=at,
                    review_deadline=add_calendar_days(at, self.policy.review_days, self.config.deadline_timezone),
                    version=invitation.version + 1,
                )
                action = TimelineAction.INVITATION_ACCEPTED
                notifications = [NotificationRequest(
                    template_key=NotificationTemplate.REVIEW_ACCEPTANCE_CONFIRMATION.value,
                    recipient=self._reviewer_address(updated),
                    payload={
                        **self._reviewer_payload(updated),
                        "review_deadline": updated.review_deadline.isoformat(),
                    },
                    idempotency_key=invitation_key(updated.id, updated.state.value),
                )]
            else:
                updated = replace(
                    invitation,
                    state=InvitationState.DECLINED,
                    responded_at=at,
                    version=invitation.version + 1,
                )
                action = TimelineAction.INVITATION_DECLINED
                notifications = [NotificationRequest(
                    template_key=NotificationTemplate.REVIEW_INVITATION_DECLINED.value,
                    recipient=self.config.editorial_office_email,
                    payload={
                        **self._reviewer_payload(updated),
                        "reason": reason or "No reason given",
                        "alternative_reviewers": ", ".join(alternative_reviewers or []) or "None suggested",
                    },
                    idempotency_key=invitation_key(updated.id, updated.state.value, "office"),
                )]

            unit = TransitionUnit(
                at=at,
                invitation=updated,
                expected_version=invitation.version,
                timeline=[self._record(updated, action, at, actor,
                                       previous_state=invitation.state.value,
                                       reason=reason,
                                       alternative_reviewers=alternative_reviewers or None,
                                       review_deadline=updated.review_deadline.isoformat()
                                       if updated.review_deadline else None)],
                notifications=notifications,
            )
            try:
                self.store.commit(unit)
            except StoreConflict as e:
                logger.warning(
                    f"respond({invitation_id}, {decision.value}) lost a race "
                    f"(attempt {attempt}/{MAX_CAS_ATTEMPTS}): {e.reason}"
                )
                continue

            logger.info(f"{'✅' if decision == Decision.ACCEPT else '❎'} Invitation {invitation_id} {updated.state.value} by {actor}")
            return updated

        # Still contended after retries: report the state we can see now
        latest = self.get(invitation_id)
        self._require_state(latest, decision.value, InvitationState.INVITED, InvitationState.REMINDED)
        raise StoreConflict(invitation_id, "respond_retries_exhausted")

    def respond_with_token(
        self,
        token: str,
        decision: Decision | str,
        at: Optional[datetime] = None,
        reason: Optional[str] = None,
        alternative_reviewers: Optional[list[str]] = None,
    ) -> ReviewInvitation:
        """respond() authorised by a signed accept/decline link."""
        claims = validate_response_token(token)
        return self.respond(
            claims["iid"],
            decision,
            at=at,
            actor_id=claims["sub"],
            reason=reason,
            alternative_reviewers=alternative_reviewers,
        )

    def auto_withdraw(
        self,
        invitation_id: str,
        at: Optional[datetime] = None,
        fire_event: Optional[FireEvent] = None,
        actor_id: str = "system",
        enforce_deadline: bool = True,
    ) -> ReviewInvitation:
        """
        reminded -> withdrawn, only once now >= responseDeadline + 7d.

        enforce_deadline=False is the administrative "escalate now"; the
        reminded-only guard still applies.

        Raises:
            InvalidTransition: not in reminded
            TooEarly: before responseDeadline + grace
        """
        at = ensure_utc(at) if at else self.clock.now()
        invitation = self.get(invitation_id)
        self._require_state(invitation, "withdraw", InvitationState.REMINDED)
        not_before = withdrawal_not_before(invitation, self.policy, self.config.deadline_timezone)
        if enforce_deadline and at < not_before:
            raise TooEarly(invitation_id, not_before)
        fire_event = fire_event or self._fire_event(invitation, FireKind.ESCALATION)

        updated = replace(invitation, state=InvitationState.WITHDRAWN, withdrawn_at=at, version=invitation.version + 1)
        payload = self._reviewer_payload(updated)
        unit = TransitionUnit(
            at=at,
            fire_event=fire_event,
            invitation=updated,
            expected_version=invitation.version,
            timeline=[self._record(updated, TimelineAction.INVITATION_WITHDRAWN, at, actor_id,
                                   fire_event=fire_event.key,
                                   forced=not enforce_deadline or None)],
            notifications=[
                NotificationRequest(
                    template_key=NotificationTemplate.REVIEW_INVITATION_WITHDRAWN.value,
                    recipient=self._reviewer_address(updated),
                    payload=payload,
                    idempotency_key=notification_key(fire_event.key),
                ),
                NotificationRequest(
                    template_key=NotificationTemplate.REVIEWER_REASSIGNMENT_NEEDED.value,
                    recipient=self.config.editorial_office_email,
                    payload=payload,
                    idempotency_key=notification_key(fire_event.key, "office"),
                ),
            ],
        )
        self._commit_timer(unit, invitation_id, "withdraw", InvitationState.REMINDED)
        logger.info(f"🚫 Invitation {invitation_id} withdrawn ({actor_id})")
        return updated

    # ==========================================
    # HELPERS
    # ==========================================

    def _commit_timer(
        self,
        unit: TransitionUnit,
        invitation_id: str,
        attempted: str,
        *allowed: InvitationState,
    ) -> None:
        """Commit a timer transition; a lost CAS is reported as the guard the winner broke."""
        try:
            self.store.commit(unit)
        except FireEventAlreadyClaimed:
            raise
        except StoreConflict:
            self._require_state(self.get(invitation_id), attempted, *allowed)
            raise

    def _require_state(self, invitation: ReviewInvitation, attempted: str, *allowed: InvitationState) -> None:
        if invitation.state in allowed:
            return
        raise InvalidTransition(
            invitation.id,
            invitation.state.value,
            attempted,
            message=NO_LONGER_OPEN if invitation.is_terminal else None,
        )

    def _fire_event(self, invitation: ReviewInvitation, kind: FireKind) -> FireEvent:
        schedule = compute_invitation_schedule(invitation, self.policy, self.config.deadline_timezone)
        fire = next(f for f in schedule.fire_events() if f.kind == kind)
        return fire.to_fire_event(ScopeType.INVITATION, invitation.id)

    def _record(self, invitation: ReviewInvitation, action: TimelineAction, at: datetime, actor_id: str, **metadata):
        return self.event_log.record(
            invitation.id, EntityType.INVITATION, action, at, actor_id,
            manuscript_id=invitation.manuscript_id,
            state=invitation.state.value,
            **metadata,
        )

    def _reviewer_address(self, invitation: ReviewInvitation) -> str:
        return invitation.reviewer_email or invitation.reviewer_id

    @staticmethod
    def _reviewer_payload(invitation: ReviewInvitation) -> dict:
        return {
            "invitation_id": invitation.id,
            "manuscript_id": invitation.manuscript_id,
            "reviewer_id": invitation.reviewer_id,
            "reviewer_name": invitation.reviewer_name or invitation.reviewer_id,
            "response_deadline": invitation.response_deadline.isoformat(),
        }
