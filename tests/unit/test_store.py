"""
Tests for the canonical state store.
"""

import itertools
from datetime import timedelta

import pytest

from mission_sync.models.entities import EntityKind, TaskStatus
from mission_sync.sync.store import ChangeAction, MergeOutcome, StateStore
from mission_sync.utils.errors import (
    ConflictError,
    EntityNotFoundError,
    UnknownTokenError,
    ValidationError,
)
from tests.fixtures.board_fixtures import BASE_TIME, BoardFixtures


class TestUpsert:
    """Last-writer-wins merging of tasks and agents."""

    def test_insert_then_update(self, store: StateStore):
        assert store.upsert("tasks", BoardFixtures.create_task("t-1", revision=1)) is MergeOutcome.INSERTED
        outcome = store.upsert("tasks", BoardFixtures.create_task("t-1", "review", revision=2))

        assert outcome is MergeOutcome.UPDATED
        assert store.get("tasks", "t-1").status is TaskStatus.REVIEW

    def test_older_revision_is_stale(self, store: StateStore):
        store.upsert("tasks", BoardFixtures.create_task("t-1", "review", revision=5))
        outcome = store.upsert("tasks", BoardFixtures.create_task("t-1", "backlog", revision=4))

        assert outcome is MergeOutcome.STALE
        assert store.get("tasks", "t-1").status is TaskStatus.REVIEW

    def test_equal_revision_incoming_wins(self, store: StateStore):
        store.upsert("tasks", BoardFixtures.create_task("t-1", title="first", revision=3))
        outcome = store.upsert("tasks", BoardFixtures.create_task("t-1", title="second", revision=3))

        assert outcome is MergeOutcome.UPDATED
        assert store.get("tasks", "t-1").title == "second"

    def test_timestamp_markers(self, store: StateStore):
        newer = BoardFixtures.create_task("t-1", title="newer", revision=None,
                                          updated_at=(BASE_TIME + timedelta(minutes=5)).isoformat())
        older = BoardFixtures.create_task("t-1", title="older", revision=None,
                                          updated_at=BASE_TIME.isoformat())
        store.upsert("tasks", newer)

        assert store.upsert("tasks", older) is MergeOutcome.STALE
        assert store.get("tasks", "t-1").title == "newer"

    def test_mixed_markers_count_as_tie(self, store: StateStore):
        store.upsert("tasks", BoardFixtures.create_task("t-1", title="counter", revision=9))
        stamped = BoardFixtures.create_task("t-1", title="stamped", revision=None,
                                            updated_at=BASE_TIME.isoformat())

        assert store.upsert("tasks", stamped) is MergeOutcome.UPDATED
        assert store.get("tasks", "t-1").title == "stamped"

    def test_revision_hint_overrides_entity_marker(self, store: StateStore):
        store.upsert("tasks", BoardFixtures.create_task("t-1", revision=5))
        outcome = store.upsert("tasks", BoardFixtures.create_task("t-1", "done", revision=9), revision_hint=1)

        assert outcome is MergeOutcome.STALE

    def test_idempotent(self, store: StateStore):
        task = BoardFixtures.create_task("t-1", "in_progress", revision=2)
        store.upsert("tasks", task)
        sequence = store.sequence

        assert store.upsert("tasks", task) is MergeOutcome.UNCHANGED
        assert store.sequence == sequence

    def test_convergence_independent_of_order(self):
        updates = [
            BoardFixtures.create_task("t-1", "backlog", revision=1),
            BoardFixtures.create_task("t-1", "in_progress", revision=2),
            BoardFixtures.create_task("t-1", "review", revision=3),
        ]
        finals = set()
        for order in itertools.permutations(updates):
            store = StateStore()
            for update in order:
                store.upsert("tasks", update)
            task = store.get("tasks", "t-1")
            finals.add((task.status, task.revision))

        assert finals == {(TaskStatus.REVIEW, 3)}

    def test_convergence_through_revision_hints(self):
        backlog = BoardFixtures.create_task("t-1", "backlog", revision=None)
        review = BoardFixtures.create_task("t-1", "review", revision=None)
        updates = [(backlog, 1), (review, 2)]

        for order in (updates, list(reversed(updates))):
            store = StateStore()
            for update, hint in order:
                store.upsert("tasks", update, revision_hint=hint)

            assert store.get("tasks", "t-1").status is TaskStatus.REVIEW

    def test_equal_value_raises_hinted_marker(self, store: StateStore):
        review = BoardFixtures.create_task("t-1", "review", revision=None)
        store.upsert("tasks", review, revision_hint=1)

        assert store.upsert("tasks", review, revision_hint=3) is MergeOutcome.UNCHANGED
        backlog = BoardFixtures.create_task("t-1", "backlog", revision=None)
        assert store.upsert("tasks", backlog, revision_hint=2) is MergeOutcome.STALE
        assert store.get("tasks", "t-1").status is TaskStatus.REVIEW

    def test_extra_server_fields_preserved(self, store: StateStore):
        store.upsert("tasks", BoardFixtures.create_task("t-1", subtasks=[{"title": "a", "done": False}]))

        assert store.get("tasks", "t-1").model_dump()["subtasks"] == [{"title": "a", "done": False}]

    def test_invalid_entity_raises(self, store: StateStore):
        with pytest.raises(ValidationError):
            store.upsert("tasks", {"id": "t-1", "status": "sideways"})

    def test_unknown_kind_raises(self, store: StateStore):
        with pytest.raises(ValidationError):
            store.get("widgets", "w-1")


class TestRemove:

    def test_remove_is_idempotent(self, seeded_store: StateStore):
        assert seeded_store.remove("tasks", "t-1") is True
        assert seeded_store.remove("tasks", "t-1") is False
        assert seeded_store.get("tasks", "t-1") is None

    def test_remove_absent(self, store: StateStore):
        assert store.remove("agents", "a-404") is False


class TestReconcile:
    """Full-collection merges from polling."""

    def test_absent_entity_removed(self, store: StateStore):
        store.reconcile("tasks", [BoardFixtures.create_task(f"t-{i}") for i in (1, 2, 7)])
        report = store.reconcile("tasks", [BoardFixtures.create_task(f"t-{i}") for i in (1, 2)])

        assert report.removed == ["t-7"]
        assert store.get("tasks", "t-7") is None
        assert {t.id for t in store.snapshot("tasks")} == {"t-1", "t-2"}

    def test_entity_written_after_fetch_start_survives(self, seeded_store: StateStore):
        as_of = seeded_store.sequence
        seeded_store.upsert("tasks", BoardFixtures.create_task("t-9"))

        response = [BoardFixtures.create_task(f"t-{i}") for i in (1, 2, 3)]
        report = seeded_store.reconcile("tasks", response, as_of=as_of)

        assert seeded_store.get("tasks", "t-9") is not None
        assert report.removed == ["t-4"]

    def test_events_are_never_deleted(self, store: StateStore):
        first = [BoardFixtures.create_event("e-1", minutes=1), BoardFixtures.create_event("e-2", minutes=2)]
        store.reconcile("events", first)
        store.reconcile("events", [BoardFixtures.create_event("e-3", minutes=3)])

        assert [e.id for e in store.snapshot("events")] == ["e-3", "e-2", "e-1"]

    def test_malformed_entries_skipped(self, store: StateStore):
        store.upsert("tasks", BoardFixtures.create_task("t-1"))
        report = store.reconcile("tasks", [
            {"id": "t-1", "status": "sideways"},
            BoardFixtures.create_task("t-2"),
        ])

        assert report.skipped == 1
        assert report.changed == 1
        # The malformed entry still counts as present
        assert store.get("tasks", "t-1") is not None

    def test_malformed_entry_with_numeric_id_counts_as_present(self, store: StateStore):
        store.upsert("tasks", BoardFixtures.create_task("5"))
        report = store.reconcile("tasks", [{"id": 5, "status": "sideways"}])

        assert report.skipped == 1
        assert report.removed == []
        assert store.get("tasks", "5") is not None

    def test_report_tally(self, seeded_store: StateStore):
        tasks = [BoardFixtures.create_task(f"t-{i}", s) for i, s in
                 ((1, "in_progress"), (2, "in_progress"), (3, "review"), (4, "done"))]
        tasks[0]["revision"] = 2
        tasks[2]["revision"] = 0

        report = seeded_store.reconcile("tasks", tasks)

        assert report.changed == 1
        assert report.stale == 1
        assert report.unchanged == 2


class TestOptimistic:
    """Begin, commit and rollback of speculative writes."""

    def test_begin_applies_patch(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "in_progress"})

        assert seeded_store.get("tasks", "t-1").status is TaskStatus.IN_PROGRESS
        entry = seeded_store.pending("tasks", "t-1")
        assert entry.token == token
        assert entry.prior_snapshot.status is TaskStatus.BACKLOG

    def test_rollback_restores_exact_prior(self, seeded_store: StateStore):
        prior = seeded_store.get("tasks", "t-1")
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "done", "title": "x"})

        assert seeded_store.rollback_optimistic(token) is MergeOutcome.UPDATED
        assert seeded_store.get("tasks", "t-1") is prior
        assert seeded_store.pending("tasks", "t-1") is None

    def test_commit_with_canonical_entity(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "in_progress"})
        canonical = BoardFixtures.create_task("t-1", "in_progress", revision=2, owner="ana")

        seeded_store.commit_optimistic(token, canonical)

        task = seeded_store.get("tasks", "t-1")
        assert task.revision == 2
        assert task.owner == "ana"
        assert seeded_store.pending("tasks", "t-1") is None

    def test_commit_without_body_keeps_speculative_value(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "review"})

        assert seeded_store.commit_optimistic(token) is MergeOutcome.UNCHANGED
        assert seeded_store.get("tasks", "t-1").status is TaskStatus.REVIEW

    def test_second_begin_conflicts(self, seeded_store: StateStore):
        seeded_store.begin_optimistic("tasks", "t-1", {"status": "review"})

        with pytest.raises(ConflictError):
            seeded_store.begin_optimistic("tasks", "t-1", {"status": "done"})

    def test_resolving_twice_raises_unknown_token(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "review"})
        seeded_store.rollback_optimistic(token)

        with pytest.raises(UnknownTokenError):
            seeded_store.rollback_optimistic(token)
        with pytest.raises(UnknownTokenError):
            seeded_store.commit_optimistic(token)

    def test_begin_on_absent_entity(self, store: StateStore):
        with pytest.raises(EntityNotFoundError):
            store.begin_optimistic("tasks", "t-404", {"status": "done"})

    def test_events_are_immutable(self, store: StateStore):
        store.upsert("events", BoardFixtures.create_event("e-1"))
        with pytest.raises(ValidationError):
            store.begin_optimistic("events", "e-1", {"message": "edited"})

    def test_invalid_patch_leaves_no_entry(self, seeded_store: StateStore):
        with pytest.raises(ValidationError):
            seeded_store.begin_optimistic("tasks", "t-1", {"status": "sideways"})
        assert seeded_store.pending("tasks", "t-1") is None

    def test_patch_cannot_change_id(self, seeded_store: StateStore):
        with pytest.raises(ValidationError):
            seeded_store.begin_optimistic("tasks", "t-1", {"id": "t-2"})

    def test_server_update_in_flight_becomes_rollback_target(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "in_progress"})
        server_value = BoardFixtures.create_task("t-1", "backlog", revision=4, title="renamed")

        assert seeded_store.upsert("tasks", server_value) is MergeOutcome.DEFERRED
        # Speculative value stays visible
        assert seeded_store.get("tasks", "t-1").status is TaskStatus.IN_PROGRESS

        seeded_store.rollback_optimistic(token)
        restored = seeded_store.get("tasks", "t-1")
        assert restored.title == "renamed"
        assert restored.revision == 4

    def test_commit_prefers_strictly_newer_server_value(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "in_progress"})
        seeded_store.upsert("tasks", BoardFixtures.create_task("t-1", "done", revision=5))

        seeded_store.commit_optimistic(token, BoardFixtures.create_task("t-1", "in_progress", revision=2))

        task = seeded_store.get("tasks", "t-1")
        assert task.revision == 5
        assert task.status is TaskStatus.DONE

    def test_hinted_server_values_in_flight(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "in_progress"})
        newer = BoardFixtures.create_task("t-1", "review", revision=None)
        older = BoardFixtures.create_task("t-1", "done", revision=None)

        assert seeded_store.upsert("tasks", newer, revision_hint=3) is MergeOutcome.DEFERRED
        assert seeded_store.upsert("tasks", older, revision_hint=2) is MergeOutcome.STALE

        # The speculative value was derived under revision 1
        seeded_store.commit_optimistic(token)

        assert seeded_store.get("tasks", "t-1").status is TaskStatus.REVIEW

    def test_removal_in_flight_applies_on_rollback(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "review"})

        assert seeded_store.remove("tasks", "t-1") is False
        assert seeded_store.get("tasks", "t-1") is not None

        assert seeded_store.rollback_optimistic(token) is MergeOutcome.REMOVED
        assert seeded_store.get("tasks", "t-1") is None

    @pytest.mark.asyncio
    async def test_wait_resolved(self, seeded_store: StateStore):
        token = seeded_store.begin_optimistic("tasks", "t-1", {"status": "review"})
        entry = seeded_store.pending("tasks", "t-1")
        assert not entry.resolved.is_set()

        seeded_store.commit_optimistic(token)

        await seeded_store.wait_resolved("tasks", "t-1")
        assert entry.resolved.is_set()


class TestEvents:
    """Bounded, ordered event history."""

    def test_history_is_capped_oldest_evicted(self, store: StateStore):
        for minute in range(12):
            store.upsert("events", BoardFixtures.create_event(f"e-{minute}", minutes=minute))

        ids = [e.id for e in store.snapshot("events")]
        assert len(ids) == 10
        assert ids[0] == "e-11"
        assert "e-0" not in ids and "e-1" not in ids

    def test_event_older_than_full_history_is_stale(self, store: StateStore):
        for minute in range(10):
            store.upsert("events", BoardFixtures.create_event(f"e-{minute}", minutes=minute))

        outcome = store.upsert("events", BoardFixtures.create_event("ancient", minutes=-60))

        assert outcome is MergeOutcome.STALE
        assert store.get("events", "ancient") is None
        assert len(store.snapshot("events")) == 10

    def test_duplicate_event_ignored(self, store: StateStore):
        event = BoardFixtures.create_event("e-1")
        assert store.upsert("events", event) is MergeOutcome.INSERTED
        assert store.upsert("events", event) is MergeOutcome.UNCHANGED

    def test_out_of_order_arrival_sorted_by_created_at(self, store: StateStore):
        for event_id, minute in (("late", 9), ("early", 1), ("middle", 5)):
            store.upsert("events", BoardFixtures.create_event(event_id, minutes=minute))

        assert [e.id for e in store.snapshot(EntityKind.EVENTS)] == ["late", "middle", "early"]


class TestNotifications:

    def test_batched_after_outermost_operation(self, store: StateStore):
        seen = []

        def listener(change):
            # Every change of the batch is already applied when the first is delivered
            seen.append((change.entity_id, len(store.snapshot("tasks"))))

        store.subscribe(listener)
        store.reconcile("tasks", [BoardFixtures.create_task("t-1"), BoardFixtures.create_task("t-2")])

        assert seen == [("t-1", 2), ("t-2", 2)]

    def test_failing_listener_does_not_block_others(self, store: StateStore):
        received = []

        def broken(change):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(received.append)
        store.upsert("tasks", BoardFixtures.create_task("t-1"))

        assert [c.action for c in received] == [ChangeAction.UPSERTED]

    def test_unsubscribe(self, store: StateStore):
        received = []
        unsubscribe = store.subscribe(received.append)
        unsubscribe()
        store.upsert("tasks", BoardFixtures.create_task("t-1"))

        assert received == []

    def test_unchanged_merge_not_notified(self, store: StateStore):
        task = BoardFixtures.create_task("t-1")
        store.upsert("tasks", task)
        received = []
        store.subscribe(received.append)

        store.upsert("tasks", task)
        assert received == []


class TestConnection:

    def test_notifies_only_on_flip(self, store: StateStore):
        received = []
        store.subscribe(received.append)

        assert store.set_connection(True) is True
        assert store.set_connection(True) is False
        assert store.connection.online is True
        assert store.connection.last_checked_at is not None
        assert [c.action for c in received] == [ChangeAction.CONNECTION]


class TestClose:

    def test_merges_ignored_after_close(self, seeded_store: StateStore):
        seeded_store.close()

        assert seeded_store.upsert("tasks", BoardFixtures.create_task("t-9")) is MergeOutcome.UNCHANGED
        assert seeded_store.remove("tasks", "t-1") is False
        assert seeded_store.set_connection(True) is False
        assert seeded_store.get("tasks", "t-9") is None
