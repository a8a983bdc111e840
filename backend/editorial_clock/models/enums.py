"""
Enum types that match the text columns in the Supabase schema.
These must stay in sync with backend/supabase/schema.sql.
"""
from enum import Enum


class InvitationState(str, Enum):
    """
    Reviewer invitation states.
    Matches: check (state in ('invited', 'reminded', 'accepted', 'declined', 'withdrawn'))
    """
    INVITED = "invited"
    REMINDED = "reminded"
    ACCEPTED = "accepted"  # terminal
    DECLINED = "declined"  # terminal
    WITHDRAWN = "withdrawn"  # terminal

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_INVITATION_STATES


TERMINAL_INVITATION_STATES = frozenset({
    InvitationState.ACCEPTED,
    InvitationState.DECLINED,
    InvitationState.WITHDRAWN,
})


class Decision(str, Enum):
    """Reviewer response to an invitation."""
    ACCEPT = "accept"
    DECLINE = "decline"


class ScopeType(str, Enum):
    """
    What a fire event is scheduled against.
    Matches: check (scope_type in ('stage', 'invitation'))
    """
    STAGE = "stage"  # scope_id = occupancy id
    INVITATION = "invitation"  # scope_id = invitation id


class FireKind(str, Enum):
    """
    Fire event kinds.
    Matches: check (kind in ('reminder', 'escalation'))
    """
    REMINDER = "reminder"  # before the deadline
    ESCALATION = "escalation"  # after the deadline


class EntityType(str, Enum):
    """Entity types recorded in the timeline."""
    MANUSCRIPT = "manuscript"
    INVITATION = "invitation"
    STAGE_DEFINITION = "stage_definition"


class TimelineAction(str, Enum):
    """Audit actions written to timeline_events."""
    STAGE_ENTERED = "stage_entered"
    STAGE_EXITED = "stage_exited"
    STAGE_REMINDER_SENT = "stage_reminder_sent"
    STAGE_ESCALATED = "stage_escalated"
    INVITATION_SENT = "invitation_sent"
    INVITATION_REMINDED = "invitation_reminded"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    INVITATION_WITHDRAWN = "invitation_withdrawn"
    STAGE_CONFIG_CHANGED = "stage_config_changed"


class NotificationStatus(str, Enum):
    """
    Outbox row status.
    Matches: check (status in ('pending', 'sent', 'failed'))
    """
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"  # gave up after max_dispatch_attempts


class NotificationTemplate(str, Enum):
    """Template keys handed to the notification transport."""
    STAGE_DEADLINE_REMINDER = "stage_deadline_reminder"
    STAGE_OVERDUE_ESCALATION = "stage_overdue_escalation"
    REVIEW_INVITATION = "review_invitation"
    REVIEW_INVITATION_REMINDER = "review_invitation_reminder"
    REVIEW_ACCEPTANCE_CONFIRMATION = "review_acceptance_confirmation"
    REVIEW_INVITATION_DECLINED = "review_invitation_declined"
    REVIEW_INVITATION_WITHDRAWN = "review_invitation_withdrawn"
    REVIEWER_REASSIGNMENT_NEEDED = "reviewer_reassignment_needed"
    SCHEDULER_JOB_FAILED = "scheduler_job_failed"
