"""
Deadline Calculator.

Pure functions from configuration + entry time to due dates and fire times:
- dueAt = enteredAt + timeLimitDays
- reminder[i] = dueAt - reminderOffsetDays[i]
- escalation[j] = dueAt + escalationOffsetDays[j]

Arithmetic is in calendar days, performed on the wall clock of the
configured timezone (a 09:00 entry stays due at 09:00 across a DST change)
and returned in UTC. No business-day skipping, no dependence on "now":
identical inputs always give identical outputs, which is what keeps the
fire-event keys stable across ticks and restarts.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..core.clock import ensure_utc
from ..core.config import settings
from ..models.domain import FireEvent, ReviewInvitation
from ..models.enums import FireKind, ScopeType
from ..models.schemas import StageDefinition


SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ScheduledFire:
    """One computed reminder/escalation time. Not persisted until it fires."""
    kind: FireKind
    offset_days: int
    fire_at: datetime

    def to_fire_event(self, scope_type: ScopeType, scope_id: str) -> FireEvent:
        return FireEvent(
            scope_type=scope_type,
            scope_id=scope_id,
            kind=self.kind,
            offset_days=self.offset_days,
            fire_at=self.fire_at,
        )


@dataclass(frozen=True)
class Schedule:
    """computeSchedule() output: due date plus every reminder/escalation time."""
    due_at: datetime
    reminder_times: tuple[ScheduledFire, ...]
    escalation_times: tuple[ScheduledFire, ...]

    def fire_events(self) -> list[ScheduledFire]:
        """All fires in chronological order (reminders before escalations on ties)."""
        return sorted(
            self.reminder_times + self.escalation_times,
            key=lambda f: (f.fire_at, f.kind != FireKind.REMINDER, f.offset_days),
        )

    def due(self, now: datetime) -> list[ScheduledFire]:
        return [f for f in self.fire_events() if f.fire_at <= now]

    def upcoming(self, now: datetime) -> list[ScheduledFire]:
        return [f for f in self.fire_events() if f.fire_at > now]


@dataclass(frozen=True)
class DeadlineStatus:
    """Days remaining/overdue, derived on read and never stored."""
    due_at: datetime
    days_remaining: int
    is_overdue: bool

    def to_dict(self) -> dict:
        return {
            "due_at": self.due_at.isoformat(),
            "days_remaining": self.days_remaining,
            "is_overdue": self.is_overdue,
        }


@dataclass
class InvitationPolicy:
    """Fixed reviewer-invitation timing."""
    response_days: Optional[int] = None
    review_days: Optional[int] = None
    withdrawal_grace_days: Optional[int] = None

    def __post_init__(self):
        if self.response_days is None:
            self.response_days = settings.invitation_response_days
        if self.review_days is None:
            self.review_days = settings.invitation_review_days
        if self.withdrawal_grace_days is None:
            self.withdrawal_grace_days = settings.invitation_withdrawal_grace_days


def resolve_timezone(tz: Optional[str | ZoneInfo] = None) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    return ZoneInfo(tz or settings.deadline_timezone)


def add_calendar_days(instant: datetime, days: int, tz: Optional[str | ZoneInfo] = None) -> datetime:
    """Shift by whole calendar days on the local wall clock, returning UTC."""
    zone = resolve_timezone(tz)
    local = ensure_utc(instant).astimezone(zone)
    # Aware + timedelta keeps the wall-clock time; the offset is recomputed on conversion
    return (local + timedelta(days=days)).astimezone(timezone.utc)


def compute_schedule(
    stage_def: StageDefinition,
    entered_at: datetime,
    tz: Optional[str | ZoneInfo] = None,
) -> Schedule:
    """computeSchedule(stageDef, enteredAt) -> {dueAt, reminderTimes[], escalationTimes[]}"""
    zone = resolve_timezone(tz)
    due_at = add_calendar_days(entered_at, stage_def.time_limit_days, zone)
    reminders = tuple(
        ScheduledFire(FireKind.REMINDER, offset, add_calendar_days(due_at, -offset, zone))
        for offset in stage_def.reminder_offset_days
    )
    escalations = tuple(
        ScheduledFire(FireKind.ESCALATION, offset, add_calendar_days(due_at, offset, zone))
        for offset in stage_def.escalation_offset_days
    )
    return Schedule(due_at=due_at, reminder_times=reminders, escalation_times=escalations)


def compute_invitation_schedule(
    invitation: ReviewInvitation,
    policy: Optional[InvitationPolicy] = None,
    tz: Optional[str | ZoneInfo] = None,
) -> Optional[Schedule]:
    """
    The fixed invitation policy expressed as a schedule.

    One reminder at offset 0 (the response deadline, invitedAt + 7d) and one
    escalation, the auto-withdrawal, at responseDeadline + grace. Terminal
    invitations have nothing left to fire.
    """
    if invitation.is_terminal:
        return None
    policy = policy or InvitationPolicy()
    due_at = invitation.response_deadline
    return Schedule(
        due_at=due_at,
        reminder_times=(ScheduledFire(FireKind.REMINDER, 0, due_at),),
        escalation_times=(
            ScheduledFire(
                FireKind.ESCALATION,
                policy.withdrawal_grace_days,
                add_calendar_days(due_at, policy.withdrawal_grace_days, tz),
            ),
        ),
    )


def withdrawal_not_before(
    invitation: ReviewInvitation,
    policy: Optional[InvitationPolicy] = None,
    tz: Optional[str | ZoneInfo] = None,
) -> datetime:
    """responseDeadline + grace: the earliest instant autoWithdraw may run."""
    policy = policy or InvitationPolicy()
    return add_calendar_days(invitation.response_deadline, policy.withdrawal_grace_days, tz)


def time_remaining(due_at: datetime, now: datetime) -> DeadlineStatus:
    """Ceiling of the remaining days; negative once overdue."""
    seconds = (ensure_utc(due_at) - ensure_utc(now)).total_seconds()
    return DeadlineStatus(
        due_at=due_at,
        days_remaining=math.ceil(seconds / SECONDS_PER_DAY),
        is_overdue=seconds < 0,
    )
