"""
StageConfig Store.

Per-stage time limits and reminder/escalation offsets. Stages are created
and edited by administrators, never deleted, only deactivated. Changes take
effect on the next tick; fire events that already fired are untouched.
"""
import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from ..core.clock import Clock
from ..core.exceptions import StageConfigError, UnknownStage
from ..core.store import SchedulingStore
from ..models.enums import EntityType, TimelineAction
from ..models.schemas import StageDefinition
from .event_log import EventLog


logger = logging.getLogger(__name__)


UPDATABLE_FIELDS = frozenset({
    "description",
    "time_limit_days",
    "reminder_offset_days",
    "escalation_offset_days",
    "active",
})


DEFAULT_STAGES: list[dict] = [
    {
        "stage_key": "editorial-assistant-review",
        "description": "Editorial assistant technical check",
        "time_limit_days": 7,
        "reminder_offset_days": [3, 1],
        "escalation_offset_days": [7, 14, 21],
    },
    {
        "stage_key": "associate-editor-assignment",
        "description": "Assign an associate editor",
        "time_limit_days": 3,
        "reminder_offset_days": [1],
        "escalation_offset_days": [3, 7, 14],
    },
    {
        "stage_key": "associate-editor-review",
        "description": "Associate editor initial review",
        "time_limit_days": 14,
        "reminder_offset_days": [7, 3, 1],
        "escalation_offset_days": [14, 21, 28],
    },
    {
        "stage_key": "reviewer-assignment",
        "description": "Invite and secure reviewers",
        "time_limit_days": 7,
        "reminder_offset_days": [3, 1],
        "escalation_offset_days": [7, 14, 21],
    },
    {
        "stage_key": "reviewer-review",
        "description": "Peer review in progress",
        "time_limit_days": 21,
        "reminder_offset_days": [14, 7, 3, 1],
        "escalation_offset_days": [7, 14, 21],
    },
]


def _validation_message(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or 'definition'}: {e['msg']}"
        for e in error.errors()
    )


def build_stage_definition(data: dict[str, Any]) -> StageDefinition:
    """Validate a raw definition, turning pydantic errors into StageConfigError."""
    try:
        return StageDefinition.model_validate(data)
    except ValidationError as e:
        raise StageConfigError(
            f"Invalid stage definition: {_validation_message(e)}",
            stage_key=data.get("stage_key"),
        )


class StageConfigService:
    """Read/write surface for StageDefinition rows."""

    def __init__(self, store: SchedulingStore, clock: Clock, event_log: EventLog):
        self.store = store
        self.clock = clock
        self.event_log = event_log

    def get(self, stage_key: str) -> StageDefinition:
        definition = self.store.get_stage(stage_key)
        if definition is None:
            raise UnknownStage(stage_key)
        return definition

    def find(self, stage_key: str) -> Optional[StageDefinition]:
        return self.store.get_stage(stage_key)

    def list_stages(self) -> list[StageDefinition]:
        return self.store.list_stages()

    def upsert(self, definition: StageDefinition | dict, actor_id: str = "system") -> tuple[StageDefinition, bool]:
        """Create or replace a definition. Returns (definition, created)."""
        if isinstance(definition, dict):
            definition = build_stage_definition(definition)
        now = self.clock.now()
        stamped = definition.model_copy(update={"updated_at": now})
        created = self.store.upsert_stage(stamped)
        self.event_log.append(self.event_log.record(
            stamped.stage_key,
            EntityType.STAGE_DEFINITION,
            TimelineAction.STAGE_CONFIG_CHANGED,
            now,
            actor_id,
            change="created" if created else "updated",
            definition=stamped.model_dump(mode="json"),
        ))
        logger.info(f"⚙️ Stage '{stamped.stage_key}' {'created' if created else 'updated'} by {actor_id}")
        return stamped, created

    def bulk_upsert(self, definitions: Iterable[dict], actor_id: str = "system") -> dict:
        """
        Upsert several definitions, reporting per-stage outcome.

        One invalid definition does not stop the others.
        """
        results = []
        for raw in definitions:
            stage_key = raw.get("stage_key")
            try:
                _, created = self.upsert(raw, actor_id=actor_id)
                results.append({
                    "stage": stage_key,
                    "success": True,
                    "action": "created" if created else "updated",
                    "error": None,
                })
            except StageConfigError as e:
                logger.warning(f"Rejected stage definition '{stage_key}': {e.message}")
                results.append({
                    "stage": stage_key,
                    "success": False,
                    "action": None,
                    "error": e.message,
                })
        succeeded = sum(1 for r in results if r["success"])
        return {
            "results": results,
            "summary": {
                "total": len(results),
                "succeeded": succeeded,
                "failed": len(results) - succeeded,
            },
        }

    def update(self, stage_key: str, actor_id: str = "system", **fields) -> StageDefinition:
        """Partial update limited to UPDATABLE_FIELDS."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise StageConfigError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                stage_key=stage_key,
                field=sorted(unknown)[0],
            )
        current = self.get(stage_key)
        changes = {k: v for k, v in fields.items() if v is not None}
        if not changes:
            return current
        merged = {**current.model_dump(), **changes}
        definition, _ = self.upsert(build_stage_definition(merged), actor_id=actor_id)
        return definition

    def deactivate(self, stage_key: str, actor_id: str = "system") -> StageDefinition:
        """Freeze future fire events for this stage; history is kept."""
        return self.update(stage_key, actor_id=actor_id, active=False)

    def activate(self, stage_key: str, actor_id: str = "system") -> StageDefinition:
        return self.update(stage_key, actor_id=actor_id, active=True)

    def seed_defaults(self) -> int:
        """Insert the default stages that don't exist yet. Never overwrites."""
        seeded = 0
        for raw in DEFAULT_STAGES:
            if self.store.get_stage(raw["stage_key"]) is None:
                self.upsert(raw, actor_id="system:seed")
                seeded += 1
        if seeded:
            logger.info(f"🌱 Seeded {seeded} default stage definition(s)")
        return seeded
