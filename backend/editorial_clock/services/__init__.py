# Services - Business Logic Layer
"""
Editorial Clock Services Module.

This module provides the core business logic for:
- Stage configuration and the deadline calculator
- Stage tracking and the reviewer invitation state machine
- The scheduler tick, escalation callbacks and notification delivery
- Administrative overrides and deadline queries
"""

# Deadline Calculator
from .deadlines import (
    DeadlineStatus,
    InvitationPolicy,
    Schedule,
    ScheduledFire,
    add_calendar_days,
    compute_invitation_schedule,
    compute_schedule,
    time_remaining,
    withdrawal_not_before,
)

# Stage Configuration
from .stage_config import DEFAULT_STAGES, StageConfigService, build_stage_definition

# Event Log
from .event_log import EventLog

# Stage Tracking / Invitations
from .stage_tracker import StageTracker
from .invitations import InvitationService

# Signed Response Links
from .response_links import (
    build_response_links,
    create_response_token,
    validate_response_token,
)

# Escalation Callbacks
from .escalation import (
    EscalationContext,
    EscalationRegistry,
    notify_editor_in_chief,
)

# Notification Delivery
from .notifications import (
    LogNotificationSender,
    NotificationDispatcher,
    NotificationResult,
    NotificationSender,
    SendGridNotificationSender,
    SmtpNotificationSender,
    build_sender,
)

# Scheduler Loop
from .engine import DeadlineEngine, TickReport

# Administrative Overrides
from .admin import AdminService

# Wiring
from .container import Services, build_services, get_services, set_services

__all__ = [
    # Deadline Calculator
    "DeadlineStatus",
    "InvitationPolicy",
    "Schedule",
    "ScheduledFire",
    "add_calendar_days",
    "compute_invitation_schedule",
    "compute_schedule",
    "time_remaining",
    "withdrawal_not_before",
    # Stage Configuration
    "DEFAULT_STAGES",
    "StageConfigService",
    "build_stage_definition",
    # Event Log
    "EventLog",
    # Stage Tracking / Invitations
    "StageTracker",
    "InvitationService",
    # Signed Response Links
    "build_response_links",
    "create_response_token",
    "validate_response_token",
    # Escalation Callbacks
    "EscalationContext",
    "EscalationRegistry",
    "notify_editor_in_chief",
    # Notification Delivery
    "LogNotificationSender",
    "NotificationDispatcher",
    "NotificationResult",
    "NotificationSender",
    "SendGridNotificationSender",
    "SmtpNotificationSender",
    "build_sender",
    # Scheduler Loop
    "DeadlineEngine",
    "TickReport",
    # Administrative Overrides
    "AdminService",
    # Wiring
    "Services",
    "build_services",
    "get_services",
    "set_services",
]
