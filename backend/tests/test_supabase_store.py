"""
Tests for the Supabase-backed scheduling store.

Runs against the mock Supabase client from conftest, which enforces the
same unique constraints as supabase/schema.sql and applies commit_transition
all-or-nothing.
"""
from dataclasses import replace
from datetime import timedelta

import pytest

from editorial_clock.core.database import SupabaseSchedulingStore
from editorial_clock.core.exceptions import DatabaseError, FireEventAlreadyClaimed, StoreConflict
from editorial_clock.core.store import InMemorySchedulingStore, TransitionUnit, get_store, set_store
from editorial_clock.models.domain import (
    FireEvent,
    NotificationRequest,
    ReviewInvitation,
    StageOccupancy,
)
from editorial_clock.models.enums import (
    EntityType,
    FireKind,
    InvitationState,
    NotificationStatus,
    ScopeType,
    TimelineAction,
)
from editorial_clock.services.container import build_services
from editorial_clock.services.event_log import EventLog

from conftest import MockAPIError, T0


@pytest.fixture
def supabase_store(mock_supabase):
    return SupabaseSchedulingStore(client=mock_supabase)


@pytest.fixture
def supabase_services(supabase_store, clock, sender):
    return build_services(store=supabase_store, clock=clock, sender=sender)


def _fire(scope_id="occ-1", offset=7):
    return FireEvent(ScopeType.STAGE, scope_id, FireKind.REMINDER, offset, T0)


def _note(key="stage:occ-1:reminder:7"):
    return NotificationRequest("stage_deadline_reminder", "editor@journal.org", {"manuscript_id": "MS-1"}, key)


def _event(entity_id="MS-1"):
    return EventLog.record(entity_id, EntityType.MANUSCRIPT, TimelineAction.STAGE_REMINDER_SENT, T0)


class TestFireEventClaims:

    @pytest.mark.unit
    def test_claim_writes_marker_timeline_and_outbox(self, supabase_store, mock_supabase):
        supabase_store.commit(TransitionUnit(at=T0, fire_event=_fire(), timeline=[_event()], notifications=[_note()]))

        (marker,) = mock_supabase.mock_data["fire_events"]
        assert marker["key"] == "stage:occ-1:reminder:7"
        assert marker["fired_at"] == T0.isoformat()
        assert supabase_store.has_fired("stage:occ-1:reminder:7")
        assert len(mock_supabase.mock_data["timeline_events"]) == 1
        assert len(mock_supabase.mock_data["notification_outbox"]) == 1

    @pytest.mark.unit
    def test_second_claim_is_rejected_and_writes_nothing(self, supabase_store, mock_supabase):
        supabase_store.commit(TransitionUnit(at=T0, fire_event=_fire(), timeline=[_event()]))

        with pytest.raises(FireEventAlreadyClaimed):
            supabase_store.commit(TransitionUnit(at=T0, fire_event=_fire(), timeline=[_event()]))

        assert len(mock_supabase.mock_data["fire_events"]) == 1
        assert len(mock_supabase.mock_data["timeline_events"]) == 1

    @pytest.mark.unit
    def test_list_fire_events_by_scope(self, supabase_store):
        supabase_store.commit(TransitionUnit(at=T0, fire_event=_fire("occ-1", 7)))
        supabase_store.commit(TransitionUnit(at=T0, fire_event=_fire("occ-2", 7)))

        (event,) = supabase_store.list_fire_events("occ-2")
        assert event.scope_id == "occ-2"
        assert event.fired_at == T0


class TestOccupancies:

    @pytest.mark.unit
    def test_second_open_occupancy_is_a_conflict(self, supabase_store):
        supabase_store.commit(TransitionUnit(at=T0, open_occupancy=StageOccupancy("MS-1", "a", T0)))

        with pytest.raises(StoreConflict) as exc:
            supabase_store.commit(TransitionUnit(at=T0, open_occupancy=StageOccupancy("MS-1", "b", T0)))
        assert exc.value.reason == "open_occupancy_exists"

    @pytest.mark.unit
    def test_close_and_open_in_one_unit(self, supabase_store):
        first = StageOccupancy("MS-1", "a", T0)
        supabase_store.commit(TransitionUnit(at=T0, open_occupancy=first))
        later = T0 + timedelta(days=1)
        second = StageOccupancy("MS-1", "b", later)
        supabase_store.commit(TransitionUnit(at=later, close_occupancy=first.closed(later), open_occupancy=second))

        assert supabase_store.get_open_occupancy("MS-1").id == second.id
        assert [o.exited_at for o in supabase_store.occupancy_history("MS-1")] == [later, None]

    @pytest.mark.unit
    def test_closing_an_already_closed_occupancy(self, supabase_store):
        occupancy = StageOccupancy("MS-1", "a", T0)
        supabase_store.commit(TransitionUnit(at=T0, open_occupancy=occupancy))
        supabase_store.commit(TransitionUnit(at=T0, close_occupancy=occupancy.closed(T0)))

        with pytest.raises(StoreConflict):
            supabase_store.commit(TransitionUnit(at=T0, close_occupancy=occupancy.closed(T0)))

    @pytest.mark.unit
    def test_guard_on_closed_occupancy_releases_the_claim(self, supabase_store, mock_supabase):
        """A fire for a stage that was left in the meantime is rolled back entirely."""
        occupancy = StageOccupancy("MS-1", "a", T0)
        supabase_store.commit(TransitionUnit(at=T0, open_occupancy=occupancy))
        supabase_store.commit(TransitionUnit(at=T0, close_occupancy=occupancy.closed(T0)))

        with pytest.raises(StoreConflict):
            supabase_store.commit(TransitionUnit(
                at=T0, fire_event=_fire(occupancy.id), require_open_occupancy_id=occupancy.id,
            ))
        assert mock_supabase.mock_data["fire_events"] == []


class TestInvitationVersions:

    def _invitation(self):
        return ReviewInvitation("MS-1", "reviewer-1", T0, T0 + timedelta(days=7), version=1)

    @pytest.mark.unit
    def test_compare_and_set(self, supabase_store):
        invitation = self._invitation()
        supabase_store.commit(TransitionUnit(at=T0, invitation=invitation))

        accepted = replace(invitation, state=InvitationState.ACCEPTED, version=2)
        supabase_store.commit(TransitionUnit(at=T0, invitation=accepted, expected_version=1))
        assert supabase_store.get_invitation(invitation.id).state == InvitationState.ACCEPTED

        declined = replace(invitation, state=InvitationState.DECLINED, version=2)
        with pytest.raises(StoreConflict) as exc:
            supabase_store.commit(TransitionUnit(at=T0, invitation=declined, expected_version=1))
        assert exc.value.reason == "version_mismatch"
        assert supabase_store.get_invitation(invitation.id).state == InvitationState.ACCEPTED

    @pytest.mark.unit
    def test_duplicate_insert(self, supabase_store):
        invitation = self._invitation()
        supabase_store.commit(TransitionUnit(at=T0, invitation=invitation))
        with pytest.raises(StoreConflict):
            supabase_store.commit(TransitionUnit(at=T0, invitation=invitation))

    @pytest.mark.edge
    def test_failed_timeline_write_restores_invitation(self, supabase_store, mock_supabase):
        """A step failing inside commit_transition leaves the previous row and no claim."""
        invitation = self._invitation()
        supabase_store.commit(TransitionUnit(at=T0, invitation=invitation))
        reminded = replace(invitation, state=InvitationState.REMINDED, version=2)

        mock_supabase.fail_on.add(("timeline_events", "insert"))
        with pytest.raises(DatabaseError):
            supabase_store.commit(TransitionUnit(
                at=T0,
                fire_event=FireEvent(ScopeType.INVITATION, invitation.id, FireKind.REMINDER, 0, T0),
                invitation=reminded,
                expected_version=1,
                timeline=[_event(invitation.id)],
            ))

        restored = supabase_store.get_invitation(invitation.id)
        assert restored.state == InvitationState.INVITED
        assert restored.version == 1
        assert mock_supabase.mock_data["fire_events"] == []


class TestOutboxAndTimeline:

    @pytest.mark.unit
    def test_failed_enqueue_rolls_back_everything(self, supabase_store, mock_supabase):
        mock_supabase.fail_on.add(("notification_outbox", "upsert"))

        with pytest.raises(DatabaseError):
            supabase_store.commit(TransitionUnit(at=T0, fire_event=_fire(), timeline=[_event()], notifications=[_note()]))

        assert mock_supabase.mock_data["fire_events"] == []
        assert mock_supabase.mock_data["timeline_events"] == []
        assert mock_supabase.mock_data["notification_outbox"] == []
        # One function call; no compensating writes from the client
        assert ("rpc", "commit_transition") in mock_supabase.calls
        assert ("fire_events", "delete") not in mock_supabase.calls

    @pytest.mark.unit
    def test_duplicate_notifications_are_ignored(self, supabase_store, mock_supabase):
        supabase_store.commit(TransitionUnit(at=T0, notifications=[_note("k")]))
        supabase_store.commit(TransitionUnit(at=T0 + timedelta(hours=1), notifications=[_note("k")]))
        assert len(supabase_store.list_notifications()) == 1

    @pytest.mark.unit
    def test_due_notifications_and_marking(self, supabase_store):
        supabase_store.commit(TransitionUnit(at=T0, notifications=[_note("a")]))
        supabase_store.commit(TransitionUnit(at=T0 + timedelta(hours=2), notifications=[_note("b")]))

        (due,) = supabase_store.due_notifications(T0 + timedelta(hours=1))
        assert due.idempotency_key == "a"

        supabase_store.mark_notification_failed(due.id, 1, "smtp down", T0 + timedelta(hours=3))
        assert supabase_store.due_notifications(T0 + timedelta(hours=1)) == []

        supabase_store.mark_notification_sent(due.id, T0 + timedelta(hours=3))
        (sent,) = supabase_store.list_notifications(NotificationStatus.SENT)
        assert sent.attempts == 2

    @pytest.mark.unit
    def test_timeline_keeps_insertion_order(self, supabase_store):
        for n in range(3):
            supabase_store.commit(TransitionUnit(at=T0, timeline=[
                EventLog.record("MS-1", EntityType.MANUSCRIPT, TimelineAction.STAGE_ENTERED, T0, step=n),
            ]))

        assert [e.metadata["step"] for e in supabase_store.timeline("MS-1")] == [0, 1, 2]
        assert [e.metadata["step"] for e in supabase_store.recent_timeline(2)] == [2, 1]

    @pytest.mark.unit
    def test_conflict_messages_map_to_store_errors(self, supabase_store, mock_supabase, monkeypatch):
        messages = iter([
            "P0001: store_conflict:fire_event_claimed:stage:occ-1:reminder:7",
            "P0001: store_conflict:version_mismatch:inv-9",
            "connection reset by peer",
        ])

        class FailingCall:
            def execute(self):
                raise MockAPIError(next(messages))

        monkeypatch.setattr(mock_supabase, "rpc", lambda name, params=None: FailingCall())

        with pytest.raises(FireEventAlreadyClaimed) as claimed:
            supabase_store.commit(TransitionUnit(at=T0, fire_event=_fire()))
        assert claimed.value.key == "stage:occ-1:reminder:7"

        with pytest.raises(StoreConflict) as conflict:
            supabase_store.commit(TransitionUnit(at=T0))
        assert conflict.value.reason == "version_mismatch"
        assert conflict.value.entity_id == "inv-9"

        with pytest.raises(DatabaseError):
            supabase_store.commit(TransitionUnit(at=T0))


class TestEngineOverSupabase:
    """The same services run unchanged on the Supabase store."""

    @pytest.mark.integration
    def test_scenario_a(self, supabase_services, clock):
        supabase_services.stage_config.upsert({
            "stage_key": "technical-check",
            "time_limit_days": 21,
            "reminder_offset_days": [7, 14, 18],
            "escalation_offset_days": [3, 7],
        })
        occupancy = supabase_services.tracker.enter_stage("MS-A", "technical-check", at=T0)

        clock.set(T0 + timedelta(days=14))
        assert supabase_services.engine.tick().reminders_fired == 3
        assert supabase_services.engine.tick().fired == 0

        clock.set(T0 + timedelta(days=40))
        assert supabase_services.engine.tick().escalations_fired == 2
        assert len(supabase_services.event_log.fired_events(occupancy.id)) == 5

    @pytest.mark.integration
    def test_scenario_b(self, supabase_services, clock):
        invitation = supabase_services.invitations.invite("MS-B", "reviewer-1", at=T0)

        clock.set(T0 + timedelta(days=7))
        supabase_services.engine.tick()
        clock.set(T0 + timedelta(days=14))
        supabase_services.engine.tick()

        final = supabase_services.invitations.get(invitation.id)
        assert final.state == InvitationState.WITHDRAWN
        assert final.version == 3
        assert supabase_services.engine.tick().fired == 0

    @pytest.mark.integration
    def test_stage_config_round_trip(self, supabase_services):
        stage = supabase_services.stage_config.get("reviewer-review")
        assert stage.reminder_offset_days == (14, 7, 3, 1)
        assert [s.stage_key for s in supabase_services.stage_config.list_stages()][0] == "associate-editor-assignment"


class TestStoreSelection:

    @pytest.mark.unit
    def test_set_store_replaces_process_store(self, supabase_store):
        try:
            assert set_store(supabase_store) is supabase_store
            assert get_store() is supabase_store
        finally:
            set_store(None)

    @pytest.mark.unit
    def test_memory_backend_is_the_default(self, monkeypatch):
        from editorial_clock.core import config

        monkeypatch.setattr(config.settings, "store_backend", "memory")
        set_store(None)
        try:
            assert isinstance(get_store(), InMemorySchedulingStore)
        finally:
            set_store(None)


class TestInterleavedWriters:
    """Another writer commits between a tick's read and its commit."""

    @pytest.mark.integration
    def test_acceptance_between_read_and_reminder_commit_wins(self, supabase_services, mock_supabase, clock, monkeypatch):
        invitation = supabase_services.invitations.invite("MS-C", "reviewer-1", at=T0)
        commit_transition = mock_supabase.rpc
        accepted = []

        def rpc(name, params=None):
            # The reviewer accepts after the tick read the invitation, before its commit lands
            if params and params.get("p_fire_event") and not accepted:
                accepted.append(supabase_services.invitations.respond(invitation.id, "accept"))
            return commit_transition(name, params)

        monkeypatch.setattr(mock_supabase, "rpc", rpc)

        clock.set(T0 + timedelta(days=7))
        report = supabase_services.engine.tick()

        final = supabase_services.invitations.get(invitation.id)
        assert final.state == InvitationState.ACCEPTED
        assert final.review_deadline == accepted[0].review_deadline
        assert final.version == 2
        assert report.reminders_fired == 0
        assert report.errors == []
        assert mock_supabase.mock_data["fire_events"] == []
        actions = [e.action for e in supabase_services.event_log.timeline(invitation.id)]
        assert TimelineAction.INVITATION_REMINDED.value not in actions

    @pytest.mark.integration
    def test_failure_mid_commit_leaves_fire_unclaimed_until_next_tick(self, supabase_services, mock_supabase, clock):
        invitation = supabase_services.invitations.invite("MS-D", "reviewer-1", at=T0)
        timeline_before = len(mock_supabase.mock_data["timeline_events"])
        clock.set(T0 + timedelta(days=7))

        mock_supabase.fail_on.add(("timeline_events", "insert"))
        report = supabase_services.engine.tick()

        assert len(report.errors) == 1
        assert mock_supabase.mock_data["fire_events"] == []
        assert len(mock_supabase.mock_data["timeline_events"]) == timeline_before
        assert supabase_services.invitations.get(invitation.id).state == InvitationState.INVITED

        mock_supabase.fail_on.clear()
        assert supabase_services.engine.tick().reminders_fired == 1
        assert supabase_services.invitations.get(invitation.id).state == InvitationState.REMINDED
        assert len(mock_supabase.mock_data["fire_events"]) == 1
