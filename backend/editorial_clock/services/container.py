"""
Service wiring.

Builds every service over one store and one clock. The API routes and the
scheduler jobs share the process-wide container; tests build their own.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from ..core.clock import Clock, get_clock
from ..core.config import Settings, settings as default_settings
from ..core.store import SchedulingStore, get_store
from .admin import AdminService
from .deadlines import InvitationPolicy
from .engine import DeadlineEngine
from .escalation import EscalationRegistry
from .event_log import EventLog
from .invitations import InvitationService
from .notifications import NotificationDispatcher, NotificationSender, build_sender
from .stage_config import StageConfigService
from .stage_tracker import StageTracker


logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Settings
    clock: Clock
    store: SchedulingStore
    event_log: EventLog
    stage_config: StageConfigService
    tracker: StageTracker
    invitations: InvitationService
    escalations: EscalationRegistry
    engine: DeadlineEngine
    dispatcher: NotificationDispatcher
    admin: AdminService


def build_services(
    store: Optional[SchedulingStore] = None,
    clock: Optional[Clock] = None,
    sender: Optional[NotificationSender] = None,
    config: Optional[Settings] = None,
    escalations: Optional[EscalationRegistry] = None,
    seed: bool = True,
) -> Services:
    config = config or default_settings
    clock = clock or get_clock()
    store = store or get_store()
    escalations = escalations or EscalationRegistry()

    event_log = EventLog(store)
    stage_config = StageConfigService(store, clock, event_log)
    tracker = StageTracker(store, stage_config, event_log, clock)
    policy = InvitationPolicy(
        response_days=config.invitation_response_days,
        review_days=config.invitation_review_days,
        withdrawal_grace_days=config.invitation_withdrawal_grace_days,
    )
    invitations = InvitationService(store, event_log, clock, policy=policy, config=config)
    engine = DeadlineEngine(store, stage_config, invitations, escalations, event_log, clock, config=config)
    dispatcher = NotificationDispatcher(store, sender or build_sender(config), clock, config=config)
    admin = AdminService(store, stage_config, tracker, invitations, engine, event_log, clock)

    if seed:
        stage_config.seed_defaults()

    return Services(
        config=config,
        clock=clock,
        store=store,
        event_log=event_log,
        stage_config=stage_config,
        tracker=tracker,
        invitations=invitations,
        escalations=escalations,
        engine=engine,
        dispatcher=dispatcher,
        admin=admin,
    )


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """Process-wide services, built on first use. Also the FastAPI dependency."""
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def set_services(services: Optional[Services]) -> Optional[Services]:
    global _services
    with _services_lock:
        _services = services
        return services
