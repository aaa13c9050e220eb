"""Tests for the BugTracker facade."""

from __future__ import annotations

import asyncio
import logging

import pytest

from bugsync.config import TrackerConfig
from bugsync.context import ActiveContext, Identity
from bugsync.errors import StoreError
from bugsync.mutations import Notification
from bugsync.subscriptions import Snapshot
from bugsync.tracker import BugTracker
from tests._fakes import FakeStore
from tests.conftest import ADMIN, VIEWER, FixedClock, settle


def _ids(bugs: object) -> list[str]:
    return [b.id for b in bugs]  # type: ignore[attr-defined]


class TestSession:
    async def test_loaded_state(self, tracker: BugTracker) -> None:
        state = tracker.state()
        assert len(state.raw_entities) == 4
        assert _ids(state.filtered_entities) == ["b1", "b2", "b4", "b3"]
        assert len(state.team_members) == 2
        assert len(state.sprints) == 2
        assert state.sync_state == "active"
        assert not state.loading
        assert state.last_error is None
        assert state.capabilities.delete
        assert state.in_flight == frozenset()

    async def test_state_to_dict(self, tracker: BugTracker) -> None:
        tracker.set_filter_spec({"tags": "ui,auth"})
        data = tracker.state().to_dict()
        assert data["raw_count"] == 4
        assert data["filter_spec"] == {"tags": ["ui", "auth"]}
        assert [b["id"] for b in data["filtered"]] == ["b1"]
        assert data["capabilities"]["manage"] is True
        assert data["last_error"] is None

    async def test_signed_out_stops_sync(self, tracker: BugTracker, store: FakeStore, context: ActiveContext) -> None:
        decision = tracker.set_session(None, None, context)
        assert not decision
        state = tracker.state()
        assert state.sync_state == "stopped"
        assert state.raw_entities == ()
        assert state.last_error is not None
        assert state.last_error.kind == "access_denied"
        assert store.listener_count() == 0

    async def test_denial_logged_once_per_session(
        self, tracker: BugTracker, identity: Identity, context: ActiveContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="bugsync.access"):
            tracker.set_session(None, None, context)
            tracker.set_session(None, None, context)
            assert len([r for r in caplog.records if r.name == "bugsync.access"]) == 1

            tracker.set_session(identity, ADMIN, context)
            tracker.set_session(None, None, context)
            assert len([r for r in caplog.records if r.name == "bugsync.access"]) == 2

    async def test_unconfigured_context(self, tracker: BugTracker, identity: Identity) -> None:
        decision = tracker.set_session(identity, ADMIN, ActiveContext(workspace_id="ws1"))
        assert decision.kind == "not_configured"
        last_error = tracker.state().last_error
        assert last_error is not None
        assert last_error.kind == "not_configured"

    async def test_profile_loading_syncs_provisionally(
        self, store: FakeStore, clock: FixedClock, identity: Identity, context: ActiveContext
    ) -> None:
        tracker = BugTracker(store, clock=clock)
        assert tracker.set_session(identity, None, context)
        await settle()
        state = tracker.state()
        assert state.capabilities.provisional
        assert len(state.raw_entities) == 4
        tracker.close()

    async def test_viewer_cannot_mutate(self, tracker: BugTracker, identity: Identity, context: ActiveContext) -> None:
        tracker.set_session(identity, VIEWER, context)
        await settle()
        outcome = await tracker.mutate_status("b1", "Closed")
        assert outcome.kind == "access_denied"

    async def test_context_switch_replaces_data(
        self, tracker: BugTracker, store: FakeStore, identity: Identity, other_context: ActiveContext
    ) -> None:
        tracker.set_session(identity, ADMIN, other_context)
        assert tracker.state().raw_entities == ()
        await settle()
        assert tracker.state().raw_entities == ()
        assert store.listener_count() == 3

    async def test_clear_session(self, tracker: BugTracker, store: FakeStore) -> None:
        tracker.clear_session()
        state = tracker.state()
        assert state.sync_state == "stopped"
        assert state.raw_entities == ()
        assert not state.capabilities.read
        assert store.listener_count() == 0

    async def test_listener_and_retry(self, tracker: BugTracker, store: FakeStore, context: ActiveContext) -> None:
        seen: list[Snapshot] = []
        remove = tracker.add_listener(seen.append)
        store.fail_feed(context.collection_path("bugs"), StoreError("unavailable"))
        await settle()
        assert tracker.state().last_error is not None
        assert tracker.retry()
        await settle()
        assert tracker.state().last_error is None
        assert len(tracker.state().raw_entities) == 4
        remove()
        assert seen


class TestFilters:
    async def test_set_and_update(self, tracker: BugTracker) -> None:
        tracker.set_filter_spec({"assignee": "alice@example.com"})
        assert _ids(tracker.filtered()) == ["b1", "b4"]
        tracker.update_filters({"status": "Open"})
        assert tracker.filter_spec == {"assignee": "alice@example.com", "status": "Open"}
        assert _ids(tracker.filtered()) == ["b1"]
        tracker.update_filters({"status": "all"})
        assert tracker.filter_spec == {"assignee": "alice@example.com"}

    async def test_invalid_spec_keeps_previous(self, tracker: BugTracker) -> None:
        tracker.set_filter_spec({"status": "Open"})
        with pytest.raises(ValueError, match="Unknown filter dimension"):
            tracker.update_filters({"colour": "red"})
        assert tracker.filter_spec == {"status": "Open"}

    async def test_explicit_spec_does_not_change_stored(self, tracker: BugTracker) -> None:
        assert _ids(tracker.filtered({"status": "Resolved"})) == ["b3"]
        assert tracker.filter_spec == {}

    async def test_filtered_view_follows_mutations(self, tracker: BugTracker) -> None:
        tracker.set_filter_spec({"status": "Closed"})
        assert tracker.filtered() == []
        await tracker.mutate_status("b1", "Closed")
        assert _ids(tracker.filtered()) == ["b1"]

    async def test_due_buckets_follow_clock(self, tracker: BugTracker, clock: FixedClock) -> None:
        tracker.set_filter_spec({"due": "overdue"})
        assert _ids(tracker.filtered()) == ["b1"]
        clock.advance(days=1)
        assert _ids(tracker.filtered()) == ["b1", "b2"]


class TestDerivedViews:
    async def test_metrics(self, tracker: BugTracker) -> None:
        assert tracker.metrics()["total"] == 4
        tracker.set_filter_spec({"status": "Resolved"})
        assert tracker.metrics()["total"] == 4
        filtered = tracker.metrics(filtered=True)
        assert filtered["total"] == 1
        assert filtered["resolution_rate"] == 100

    async def test_groups(self, tracker: BugTracker) -> None:
        groups = tracker.groups("sprint")
        assert [(g.label, g.count) for g in groups] == [("Sprint 1", 2), ("Unassigned", 2)]

    async def test_export(self, tracker: BugTracker) -> None:
        rows = {row["id"]: row for row in tracker.export_entities()}
        assert rows["b1"]["assignee_name"] == "Alice Smith"
        assert rows["b3"]["assignee_name"] == "bob"
        assert rows["b2"]["assignee_name"] == "Unassigned"
        assert rows["b1"]["short_id"] == "G-1001"

    async def test_export_respects_short_id_length(
        self, store: FakeStore, clock: FixedClock, identity: Identity, context: ActiveContext
    ) -> None:
        tracker = BugTracker(store, config=TrackerConfig(short_id_length=4), clock=clock)
        tracker.set_session(identity, ADMIN, context)
        await settle()
        assert {row["short_id"] for row in tracker.export_entities()} == {"1001", "1002", "1003", "1004"}
        tracker.close()


class TestMutations:
    async def test_status(self, tracker: BugTracker) -> None:
        outcome = await tracker.mutate_status("b1", "Resolved")
        assert outcome.ok
        bug = tracker.subscriptions.snapshot.bug("b1")
        assert bug is not None
        assert bug.status == "Resolved"
        assert bug.resolved_at is not None

    async def test_severity_updates_priority(self, tracker: BugTracker) -> None:
        await tracker.mutate_severity("b2", "Low")
        bug = tracker.subscriptions.snapshot.bug("b2")
        assert bug is not None
        assert (bug.severity, bug.priority) == ("Low", "Low")

    async def test_field_family(self, tracker: BugTracker, store: FakeStore, context: ActiveContext) -> None:
        assert (await tracker.mutate_assignment("b1", None)).ok
        assert (await tracker.mutate_environment("b1", "testing")).ok
        assert (await tracker.mutate_frequency("b1", "Once")).ok
        assert (await tracker.mutate_title("b1", "Login broken")).ok
        assert (await tracker.mutate_arbitrary("b1", {"category": "Auth"})).ok
        stored = store.get(context.collection_path("bugs"), "b1")
        assert stored is not None
        assert stored["assignee"] is None
        assert stored["environment"] == "Testing"
        assert stored["frequency"] == "Once"
        assert stored["title"] == "Login broken"
        assert stored["category"] == "Auth"

    async def test_invalid_title(self, tracker: BugTracker) -> None:
        outcome = await tracker.mutate_title("b1", "")
        assert outcome.kind == "validation"

    async def test_delete(self, tracker: BugTracker) -> None:
        assert (await tracker.delete_entity("b3")).ok
        assert "b3" not in _ids(tracker.state().raw_entities)

    async def test_create(self, tracker: BugTracker) -> None:
        outcome = await tracker.create_entity({"title": "From dashboard"})
        assert outcome.ok
        await settle()
        assert tracker.state().raw_entities[0].title == "From dashboard"

    async def test_create_sprint(self, tracker: BugTracker) -> None:
        outcome = await tracker.create_sprint({"name": "Sprint 3"})
        assert outcome.ok
        await settle()
        assert "Sprint 3" in {s.name for s in tracker.state().sprints}

    async def test_bulk(self, tracker: BugTracker) -> None:
        result = await tracker.bulk_action(["b1", "b2"], "close")
        assert result.succeeded == 2

    async def test_in_flight_visible_in_state(self, tracker: BugTracker, store: FakeStore) -> None:
        gate = store.hold()
        task = asyncio.create_task(tracker.mutate_status("b1", "Closed"))
        await settle()
        assert tracker.state().in_flight == frozenset({"b1"})
        gate.set()
        await task
        assert tracker.state().in_flight == frozenset()

    async def test_configured_timeout(
        self, store: FakeStore, clock: FixedClock, identity: Identity, context: ActiveContext
    ) -> None:
        tracker = BugTracker(store, config=TrackerConfig(mutation_timeout_seconds=0.01), clock=clock)
        tracker.set_session(identity, ADMIN, context)
        await settle()
        store.hold()
        outcome = await tracker.mutate_status("b1", "Closed")
        assert outcome.kind == "transient"
        tracker.close()

    async def test_require_loaded_permissions(
        self, store: FakeStore, clock: FixedClock, identity: Identity, context: ActiveContext
    ) -> None:
        tracker = BugTracker(store, config=TrackerConfig(require_loaded_permissions=True), clock=clock)
        tracker.set_session(identity, None, context)
        await settle()
        outcome = await tracker.mutate_status("b1", "Closed")
        assert outcome.kind == "access_denied"
        tracker.close()


class TestNotifications:
    async def test_recorded_and_cleared(self, tracker: BugTracker) -> None:
        await tracker.mutate_status("b1", "Closed")
        notes = tracker.notifications()
        assert len(notes) == 1
        assert notes[0]["level"] == "success"
        tracker.clear_notifications()
        assert tracker.notifications() == []

    async def test_limit(
        self, store: FakeStore, clock: FixedClock, identity: Identity, context: ActiveContext
    ) -> None:
        tracker = BugTracker(store, config=TrackerConfig(notification_limit=2), clock=clock)
        tracker.set_session(identity, ADMIN, context)
        await settle()
        for title in ("One title", "Two title", "Three title"):
            await tracker.mutate_title("b1", title)
        notes = tracker.notifications()
        assert len(notes) == 2
        assert "updated" in notes[-1]["message"]
        tracker.close()

    async def test_external_notifier(
        self, store: FakeStore, clock: FixedClock, identity: Identity, context: ActiveContext
    ) -> None:
        received: list[Notification] = []
        tracker = BugTracker(store, clock=clock, notifier=received.append)
        tracker.set_session(identity, ADMIN, context)
        await settle()
        await tracker.mutate_status("ghost", "Closed")
        assert received[0].level == "error"
        tracker.close()


class TestManualRefetch:
    async def test_success(self, tracker: BugTracker, store: FakeStore, context: ActiveContext) -> None:
        version = tracker.state().snapshot_version
        assert await tracker.manual_refetch() is True
        assert sorted(store.queries) == sorted(context.collection_path(n) for n in ("bugs", "members", "sprints"))
        assert tracker.state().snapshot_version > version
        assert _ids(tracker.state().raw_entities) == ["b1", "b2", "b4", "b3"]

    async def test_failure_keeps_data(self, tracker: BugTracker, store: FakeStore) -> None:
        store.fail_next("query", StoreError("unavailable"))
        assert await tracker.manual_refetch() is False
        state = tracker.state()
        assert len(state.raw_entities) == 4
        assert state.last_error is not None
        assert state.last_error.retryable
        assert tracker.notifications()[-1]["level"] == "warning"

    async def test_signed_out(self, tracker: BugTracker) -> None:
        tracker.clear_session()
        assert await tracker.manual_refetch() is False
        assert tracker.state().last_error is not None

    async def test_result_after_context_switch_discarded(
        self, tracker: BugTracker, store: FakeStore, identity: Identity, other_context: ActiveContext
    ) -> None:
        store.latency = 0.01
        task = asyncio.create_task(tracker.manual_refetch())
        await asyncio.sleep(0)
        tracker.set_session(identity, ADMIN, other_context)
        assert await task is False
        await settle()
        assert tracker.state().raw_entities == ()
