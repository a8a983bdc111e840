"""
Tests for the Submission Stage Tracker.

Covers:
- At most one open occupancy per manuscript
- AlreadyInStage / UnknownStage / out-of-order entries
- Exiting the pipeline
- Timeline entries for every move
- Concurrent and randomised moves on the in-memory and Supabase stores
"""
import random
import threading
from datetime import timedelta

import pytest

from editorial_clock.core.database import SupabaseSchedulingStore
from editorial_clock.core.exceptions import (
    AlreadyInStage,
    InvalidTransition,
    NotFoundError,
    StoreConflict,
    UnknownStage,
)
from editorial_clock.core.store import InMemorySchedulingStore
from editorial_clock.models.enums import TimelineAction
from editorial_clock.services.container import build_services

from conftest import MockSupabaseClient, T0


@pytest.fixture(params=["memory", "supabase"])
def any_store_services(request, clock, sender):
    """Service container over each store backend."""
    if request.param == "memory":
        store = InMemorySchedulingStore()
    else:
        store = SupabaseSchedulingStore(client=MockSupabaseClient())
    return build_services(store=store, clock=clock, sender=sender)


class TestEnterStage:
    """enterStage(manuscriptId, stageKey, at)"""

    @pytest.mark.unit
    def test_first_entry_opens_occupancy(self, services):
        occupancy = services.tracker.enter_stage("MS-1", "editorial-assistant-review", at=T0)

        assert occupancy.is_open
        assert occupancy.entered_at == T0
        assert services.tracker.current_occupancy("MS-1").id == occupancy.id

    @pytest.mark.unit
    def test_entry_defaults_to_clock_now(self, services, clock):
        clock.advance(hours=3)
        occupancy = services.tracker.enter_stage("MS-1", "editorial-assistant-review")
        assert occupancy.entered_at == T0 + timedelta(hours=3)

    @pytest.mark.unit
    def test_moving_closes_previous_occupancy(self, services):
        """Exactly one open occupancy after a move; the old one is closed at the move time."""
        first = services.tracker.enter_stage("MS-1", "editorial-assistant-review", at=T0)
        second = services.tracker.enter_stage("MS-1", "associate-editor-assignment", at=T0 + timedelta(days=2))

        history = services.tracker.history("MS-1")
        assert [o.id for o in history] == [first.id, second.id]
        assert history[0].exited_at == T0 + timedelta(days=2)
        assert [o.is_open for o in history] == [False, True]
        assert services.store.list_open_occupancies() == [second]

    @pytest.mark.unit
    def test_assignee_recorded(self, services):
        occupancy = services.tracker.enter_stage(
            "MS-1", "associate-editor-review", at=T0, assignee_id="editor-7"
        )
        assert occupancy.assignee_id == "editor-7"

    @pytest.mark.unit
    def test_unknown_stage_rejected(self, services):
        with pytest.raises(UnknownStage):
            services.tracker.enter_stage("MS-1", "typesetting", at=T0)
        assert services.tracker.history("MS-1") == []

    @pytest.mark.unit
    def test_inactive_stage_can_still_be_entered(self, services):
        """Deactivation freezes reminders, it does not block workflow moves."""
        services.stage_config.deactivate("reviewer-review")
        occupancy = services.tracker.enter_stage("MS-1", "reviewer-review", at=T0)
        assert occupancy.is_open

    @pytest.mark.unit
    def test_reentering_current_stage_rejected(self, services):
        services.tracker.enter_stage("MS-1", "reviewer-review", at=T0)
        with pytest.raises(AlreadyInStage) as exc:
            services.tracker.enter_stage("MS-1", "reviewer-review", at=T0 + timedelta(days=1))
        assert exc.value.status_code == 409
        assert len(services.tracker.history("MS-1")) == 1

    @pytest.mark.edge
    def test_returning_to_an_earlier_stage_opens_new_occupancy(self, services):
        """A manuscript sent back to a stage gets a fresh occupancy and a fresh schedule."""
        first = services.tracker.enter_stage("MS-1", "reviewer-review", at=T0)
        services.tracker.enter_stage("MS-1", "associate-editor-review", at=T0 + timedelta(days=1))
        again = services.tracker.enter_stage("MS-1", "reviewer-review", at=T0 + timedelta(days=2))

        assert again.id != first.id
        assert again.entered_at == T0 + timedelta(days=2)

    @pytest.mark.edge
    def test_entry_before_current_entry_rejected(self, services):
        """Occupancy intervals cannot overlap."""
        services.tracker.enter_stage("MS-1", "reviewer-review", at=T0)
        with pytest.raises(InvalidTransition):
            services.tracker.enter_stage("MS-1", "associate-editor-review", at=T0 - timedelta(hours=1))

    @pytest.mark.edge
    def test_manuscripts_are_independent(self, services):
        services.tracker.enter_stage("MS-1", "reviewer-review", at=T0)
        services.tracker.enter_stage("MS-2", "reviewer-review", at=T0)
        assert len(services.store.list_open_occupancies()) == 2


class TestExitPipeline:

    @pytest.mark.unit
    def test_exit_closes_without_opening(self, services):
        services.tracker.enter_stage("MS-1", "reviewer-review", at=T0)
        closed = services.tracker.exit_pipeline("MS-1", at=T0 + timedelta(days=3), reason="accepted")

        assert closed.exited_at == T0 + timedelta(days=3)
        assert services.store.get_open_occupancy("MS-1") is None

    @pytest.mark.unit
    def test_exit_without_open_stage(self, services):
        with pytest.raises(NotFoundError) as exc:
            services.tracker.exit_pipeline("MS-404")
        assert exc.value.status_code == 404

    @pytest.mark.unit
    def test_current_occupancy_missing(self, services):
        with pytest.raises(NotFoundError):
            services.tracker.current_occupancy("MS-404")


class TestStageTimeline:
    """Every move is audited."""

    @pytest.mark.unit
    def test_move_writes_exit_and_entry_events(self, services):
        services.tracker.enter_stage("MS-1", "editorial-assistant-review", at=T0, actor_id="ea-1")
        services.tracker.enter_stage("MS-1", "associate-editor-assignment", at=T0 + timedelta(days=1), actor_id="ea-1")

        events = services.event_log.timeline("MS-1")
        assert [e.action for e in events] == [
            TimelineAction.STAGE_ENTERED.value,
            TimelineAction.STAGE_EXITED.value,
            TimelineAction.STAGE_ENTERED.value,
        ]
        assert events[1].metadata["next_stage"] == "associate-editor-assignment"
        assert events[2].metadata["previous_stage"] == "editorial-assistant-review"
        assert all(e.actor_id == "ea-1" for e in events)

    @pytest.mark.unit
    def test_exit_pipeline_records_reason(self, services):
        services.tracker.enter_stage("MS-1", "reviewer-review", at=T0)
        services.tracker.exit_pipeline("MS-1", at=T0 + timedelta(days=1), reason="rejected")

        last = services.event_log.timeline("MS-1")[-1]
        assert last.action == TimelineAction.STAGE_EXITED.value
        assert last.metadata["reason"] == "rejected"


class TestConcurrentEntry:
    """Racing enter_stage calls leave exactly one open occupancy."""

    @pytest.mark.integration
    @pytest.mark.parametrize("round_", range(5))
    def test_parallel_entries_leave_one_open_occupancy(self, any_store_services, round_):
        services = any_store_services
        stage_keys = [s.stage_key for s in services.stage_config.list_stages()][:4]
        barrier = threading.Barrier(len(stage_keys))
        outcomes = {}

        def enter(stage_key):
            barrier.wait()
            try:
                services.tracker.enter_stage("MS-1", stage_key, at=T0)
                outcomes[stage_key] = "entered"
            except StoreConflict as e:
                outcomes[stage_key] = e.reason

        threads = [threading.Thread(target=enter, args=(key,)) for key in stage_keys]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        # Every call returned or raised a store conflict; none vanished
        assert set(outcomes) == set(stage_keys)
        entered = [key for key, outcome in outcomes.items() if outcome == "entered"]
        assert entered

        history = services.tracker.history("MS-1")
        current = services.tracker.current_occupancy("MS-1")
        assert [o.id for o in history if o.is_open] == [current.id]
        assert len(history) == len(entered)
        assert current.stage_key in entered

        entries = [
            e for e in services.event_log.timeline("MS-1")
            if e.action == TimelineAction.STAGE_ENTERED.value
        ]
        assert len(entries) == len(entered)

    @pytest.mark.edge
    @pytest.mark.parametrize("seed", [3, 17, 42])
    def test_random_moves_match_a_simple_model(self, any_store_services, seed):
        services = any_store_services
        rng = random.Random(seed)
        stage_keys = [s.stage_key for s in services.stage_config.list_stages()][:3]
        expected = None

        for step in range(40):
            at = T0 + timedelta(hours=step)
            if rng.random() < 0.25:
                if expected is None:
                    with pytest.raises(NotFoundError):
                        services.tracker.exit_pipeline("MS-1", at=at)
                else:
                    services.tracker.exit_pipeline("MS-1", at=at)
                    expected = None
            else:
                stage_key = rng.choice(stage_keys)
                if stage_key == expected:
                    with pytest.raises(AlreadyInStage):
                        services.tracker.enter_stage("MS-1", stage_key, at=at)
                else:
                    services.tracker.enter_stage("MS-1", stage_key, at=at)
                    expected = stage_key

            open_occupancies = [o for o in services.tracker.history("MS-1") if o.is_open]
            assert [o.stage_key for o in open_occupancies] == ([expected] if expected else [])
