"""
Submission Stage Tracker.

Owns "which stage is manuscript M in, since when" and its history.

Leaving a stage closes its occupancy. The scheduler derives fire
candidates from open occupancies only, so closing one is all it takes to
cancel that stage's remaining reminders and escalations.
"""
import logging
from datetime import datetime
from typing import Optional

from ..core.clock import Clock, ensure_utc
from ..core.exceptions import AlreadyInStage, InvalidTransition, NotFoundError, StoreConflict
from ..core.store import SchedulingStore, TransitionUnit
from ..models.domain import StageOccupancy
from ..models.enums import EntityType, TimelineAction
from .event_log import EventLog
from .stage_config import StageConfigService


logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3


class StageTracker:
    """enterStage / currentOccupancy / history, plus exit from the pipeline."""

    def __init__(
        self,
        store: SchedulingStore,
        stage_config: StageConfigService,
        event_log: EventLog,
        clock: Clock,
    ):
        self.store = store
        self.stage_config = stage_config
        self.event_log = event_log
        self.clock = clock

    def enter_stage(
        self,
        manuscript_id: str,
        stage_key: str,
        at: Optional[datetime] = None,
        actor_id: str = "system",
        assignee_id: Optional[str] = None,
    ) -> StageOccupancy:
        """
        Close the current open occupancy (if any) and open one for stage_key.

        Raises:
            UnknownStage: stage_key is not configured (inactive stages are fine)
            AlreadyInStage: the manuscript is already open in stage_key
        """
        at = ensure_utc(at) if at else self.clock.now()
        self.stage_config.get(stage_key)

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current = self.store.get_open_occupancy(manuscript_id)
            if current is not None and current.stage_key == stage_key:
                raise AlreadyInStage(manuscript_id, stage_key)
            if current is not None and at < current.entered_at:
                raise InvalidTransition(
                    manuscript_id,
                    current.stage_key,
                    "enter_stage",
                    message=f"Transition at {at.isoformat()} precedes entry into '{current.stage_key}'",
                )

            opened = StageOccupancy(
                manuscript_id=manuscript_id,
                stage_key=stage_key,
                entered_at=at,
                assignee_id=assignee_id,
            )
            unit = TransitionUnit(at=at, open_occupancy=opened)
            if current is not None:
                unit.close_occupancy = current.closed(at)
                unit.timeline.append(self.event_log.record(
                    manuscript_id, EntityType.MANUSCRIPT, TimelineAction.STAGE_EXITED, at, actor_id,
                    stage_key=current.stage_key,
                    occupancy_id=current.id,
                    next_stage=stage_key,
                ))
            unit.timeline.append(self.event_log.record(
                manuscript_id, EntityType.MANUSCRIPT, TimelineAction.STAGE_ENTERED, at, actor_id,
                stage_key=stage_key,
                occupancy_id=opened.id,
                previous_stage=current.stage_key if current else None,
                assignee_id=assignee_id,
            ))

            try:
                self.store.commit(unit)
            except StoreConflict as e:
                logger.warning(
                    f"enter_stage({manuscript_id}, {stage_key}) lost a race "
                    f"(attempt {attempt}/{MAX_CAS_ATTEMPTS}): {e.reason}"
                )
                continue

            logger.info(
                f"➡️ Manuscript {manuscript_id}: "
                f"{current.stage_key if current else '(new)'} → {stage_key} by {actor_id}"
            )
            return opened

        raise StoreConflict(manuscript_id, "enter_stage_retries_exhausted")

    def exit_pipeline(
        self,
        manuscript_id: str,
        at: Optional[datetime] = None,
        actor_id: str = "system",
        reason: Optional[str] = None,
    ) -> StageOccupancy:
        """Close the open occupancy without opening another (final decision, withdrawal)."""
        at = ensure_utc(at) if at else self.clock.now()
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current = self.current_occupancy(manuscript_id)
            closed = current.closed(max(at, current.entered_at))
            unit = TransitionUnit(
                at=at,
                close_occupancy=closed,
                timeline=[self.event_log.record(
                    manuscript_id, EntityType.MANUSCRIPT, TimelineAction.STAGE_EXITED, at, actor_id,
                    stage_key=current.stage_key,
                    occupancy_id=current.id,
                    reason=reason,
                )],
            )
            try:
                self.store.commit(unit)
            except StoreConflict as e:
                logger.warning(f"exit_pipeline({manuscript_id}) lost a race (attempt {attempt}): {e.reason}")
                continue
            logger.info(f"🏁 Manuscript {manuscript_id} left the pipeline from {current.stage_key}")
            return closed

        raise StoreConflict(manuscript_id, "exit_pipeline_retries_exhausted")

    def current_occupancy(self, manuscript_id: str) -> StageOccupancy:
        occupancy = self.store.get_open_occupancy(manuscript_id)
        if occupancy is None:
            raise NotFoundError("occupancy", manuscript_id, f"Manuscript '{manuscript_id}' has no open stage")
        return occupancy

    def history(self, manuscript_id: str) -> list[StageOccupancy]:
        return self.store.occupancy_history(manuscript_id)
