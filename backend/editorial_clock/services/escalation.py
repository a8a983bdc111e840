"""
Per-stage escalation callbacks.

The scheduler only guarantees when an escalation fires and that it fires
once. What it does is a handler registered for the stage key: a callable
that receives the EscalationContext and returns the notifications to queue.
A handler runs once per escalation, after the tick that won the claim has
committed it; a tick that loses the claim never calls it. The returned
requests are queued under the fire-event key, so the outbox drops a repeat.

Key Features:
- One handler per stage key, new stages need no scheduler change
- Default handler notifies the editor-in-chief
- Escalation level = position of the offset in the stage's escalation list
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..models.domain import NotificationRequest, StageOccupancy
from ..models.enums import NotificationTemplate
from ..models.schemas import StageDefinition
from .deadlines import ScheduledFire


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationContext:
    """Everything a handler may look at when a stage deadline is missed."""
    occupancy: StageOccupancy
    stage: StageDefinition
    fire: ScheduledFire
    due_at: datetime
    now: datetime
    idempotency_key: str
    editor_in_chief_email: str

    @property
    def escalation_level(self) -> int:
        """1 for the first escalation offset, 2 for the second, ..."""
        try:
            return self.stage.escalation_offset_days.index(self.fire.offset_days) + 1
        except ValueError:
            return 1

    @property
    def days_overdue(self) -> int:
        return max((self.now - self.due_at).days, 0)


EscalationHandler = Callable[[EscalationContext], list[NotificationRequest]]


def notify_editor_in_chief(context: EscalationContext) -> list[NotificationRequest]:
    """Default escalation: tell the editor-in-chief the manuscript is overdue."""
    return [
        NotificationRequest(
            template_key=NotificationTemplate.STAGE_OVERDUE_ESCALATION.value,
            recipient=context.editor_in_chief_email,
            payload={
                "manuscript_id": context.occupancy.manuscript_id,
                "stage_key": context.stage.stage_key,
                "due_at": context.due_at.isoformat(),
                "days_overdue": context.days_overdue,
                "escalation_level": context.escalation_level,
                "assignee_id": context.occupancy.assignee_id,
            },
            idempotency_key=context.idempotency_key,
        )
    ]


class EscalationRegistry:
    """stage key -> EscalationHandler, with a default for unregistered stages."""

    def __init__(self, default: Optional[EscalationHandler] = None):
        self._handlers: dict[str, EscalationHandler] = {}
        self.default = default or notify_editor_in_chief

    def register(self, stage_key: str, handler: EscalationHandler) -> None:
        if stage_key in self._handlers:
            logger.info(f"Replacing escalation handler for stage '{stage_key}'")
        self._handlers[stage_key] = handler

    def unregister(self, stage_key: str) -> None:
        self._handlers.pop(stage_key, None)

    def handler_for(self, stage_key: str) -> EscalationHandler:
        return self._handlers.get(stage_key, self.default)

    def registered_stages(self) -> list[str]:
        return sorted(self._handlers)
