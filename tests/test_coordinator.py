"""Tests for the client merge engine."""

import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from bookingsync.client import SyncCoordinator
from bookingsync.client.coordinator import MAX_REMEMBERED_DELETIONS
from bookingsync.hub import RecordCreated, RecordDeleted, RecordUpdated
from bookingsync.store import Record

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def record(record_id: str, created: float, updated: float | None = None, **payload) -> Record:
    return Record(
        id=record_id,
        payload=payload or {"guest": record_id},
        created_at=at(created),
        updated_at=at(updated if updated is not None else created),
    )


@pytest.fixture
def notify():
    return MagicMock()


@pytest.fixture
def coordinator(notify):
    return SyncCoordinator(on_new_record=notify)


class TestCatchup:
    """Tests for folding catch-up batches."""

    def test_inserts_unknown_records(self, coordinator):
        result = coordinator.apply_catchup(at(0), [record("a", 1), record("b", 2)])
        assert result.inserted == ["a", "b"]
        assert len(coordinator) == 2
        assert coordinator.watermark == at(2)

    def test_replaying_batch_changes_nothing(self, coordinator):
        batch = [record("a", 1, 3, guest="A2"), record("b", 2)]
        coordinator.apply_catchup(at(1), batch)
        before = coordinator.state()

        result = coordinator.apply_catchup(at(1), batch)

        assert not result.changed
        assert result.ignored == 2
        assert coordinator.state() == before

    def test_newer_update_replaces(self, coordinator):
        coordinator.apply_catchup(at(0), [record("a", 1, guest="old")])
        result = coordinator.apply_catchup(at(1), [record("a", 1, 5, guest="new")])
        assert result.replaced == ["a"]
        assert coordinator.get("a").payload == {"guest": "new"}

    def test_older_copy_ignored(self, coordinator):
        coordinator.apply_catchup(at(0), [record("a", 1, 5, guest="new")])
        result = coordinator.apply_catchup(at(0), [record("a", 1, 3, guest="stale")])
        assert result.ignored == 1
        assert coordinator.get("a").payload == {"guest": "new"}

    def test_equal_timestamp_replaces(self, coordinator):
        coordinator.apply_catchup(at(0), [record("a", 1, 5, guest="first")])
        coordinator.apply_catchup(at(0), [record("a", 1, 5, guest="second")])
        assert coordinator.get("a").payload == {"guest": "second"}

    def test_deleted_ids_removed(self, coordinator):
        coordinator.apply_snapshot([record("a", 1), record("b", 2)])
        result = coordinator.apply_catchup(at(2), [], deleted_ids=["a", "unknown"])
        assert result.removed == ["a"]
        assert "a" not in coordinator
        assert "b" in coordinator

    def test_watermark_only_advances(self, coordinator):
        coordinator.apply_catchup(at(0), [record("a", 1, 9)])
        coordinator.apply_catchup(at(0), [record("b", 2)])
        assert coordinator.watermark == at(9)

    def test_worked_example(self, coordinator):
        coordinator.apply_snapshot([record("A", 1)])

        coordinator.apply_catchup(at(1), [record("A", 1, 3, guest="A2"), record("B", 2)])

        state = coordinator.state()
        assert set(state) == {"A", "B"}
        assert state["A"].updated_at == at(3)
        assert state["B"].created_at == at(2)


class TestSnapshot:
    """Tests for folding full listings."""

    def test_drops_records_missing_from_listing(self, coordinator):
        coordinator.apply_snapshot([record("a", 1), record("b", 2)])
        result = coordinator.apply_snapshot([record("b", 2)], as_of=at(5))
        assert result.removed == ["a"]
        assert set(coordinator.state()) == {"b"}

    def test_keeps_records_newer_than_listing(self, coordinator):
        coordinator.apply_snapshot([record("a", 1)])
        # Arrived live after the listing was taken at 5s
        coordinator.apply_live_event(RecordCreated(record("late", 6)))
        coordinator.apply_live_event(RecordUpdated(record("a", 1, 7, guest="A2")))

        result = coordinator.apply_snapshot([], as_of=at(5))

        assert result.removed == []
        assert set(coordinator.state()) == {"a", "late"}

    def test_without_server_time_drops_every_unlisted_record(self, coordinator):
        coordinator.apply_snapshot([record("a", 1), record("b", 9)])
        coordinator.apply_snapshot([record("a", 1)])
        assert set(coordinator.state()) == {"a"}

    def test_dropped_record_not_resurrected_by_stale_event(self, coordinator):
        coordinator.apply_snapshot([record("a", 1)])
        coordinator.apply_snapshot([], as_of=at(5))
        coordinator.apply_live_event(RecordUpdated(record("a", 1, 2, guest="stale")))
        assert "a" not in coordinator


class TestLiveEvents:
    """Tests for folding broadcast events."""

    def test_created_and_updated(self, coordinator):
        coordinator.apply_live_event(RecordCreated(record("a", 1)))
        coordinator.apply_live_event(RecordUpdated(record("a", 1, 2, guest="changed")))
        assert coordinator.get("a").payload == {"guest": "changed"}
        assert coordinator.watermark == at(2)

    def test_deleted(self, coordinator):
        coordinator.apply_live_event(RecordCreated(record("a", 1)))
        result = coordinator.apply_live_event(RecordDeleted("a"))
        assert result.removed == ["a"]
        assert len(coordinator) == 0

    def test_stale_upsert_does_not_resurrect(self, coordinator):
        coordinator.apply_live_event(RecordCreated(record("a", 1)))
        coordinator.apply_live_event(RecordDeleted("a"))
        coordinator.apply_catchup(at(0), [record("a", 1)])
        assert "a" not in coordinator

    def test_unknown_event_rejected(self, coordinator):
        with pytest.raises(TypeError):
            coordinator.apply_live_event("created")

    def test_catchup_and_live_events_commute(self):
        batch = [record("a", 1, 4, guest="A2"), record("b", 2), record("c", 3, 6, guest="C2")]
        live = [
            RecordCreated(record("b", 2)),
            RecordUpdated(record("a", 1, 4, guest="A2")),
            RecordUpdated(record("c", 3, 5, guest="C1")),
            RecordCreated(record("d", 7)),
        ]

        outcomes = []
        for order in itertools.permutations(range(len(live) + 1)):
            coordinator = SyncCoordinator()
            coordinator.apply_snapshot([record("a", 1), record("c", 3)])
            for step in order:
                if step == len(live):
                    coordinator.apply_catchup(at(1), batch)
                else:
                    coordinator.apply_live_event(live[step])
            outcomes.append((coordinator.state(), coordinator.watermark))

        assert all(outcome == outcomes[0] for outcome in outcomes)
        state, watermark = outcomes[0]
        assert state["c"].payload == {"guest": "C2"}
        assert watermark == at(7)


class TestNotifications:
    """Tests for new-record notifications."""

    def test_notified_once_across_sources(self, coordinator, notify):
        coordinator.apply_live_event(RecordCreated(record("a", 1)))
        coordinator.apply_catchup(at(0), [record("a", 1), record("b", 2)])
        coordinator.apply_live_event(RecordCreated(record("b", 2)))

        assert [call.args[0].id for call in notify.call_args_list] == ["a", "b"]

    def test_updates_do_not_notify(self, coordinator, notify):
        coordinator.apply_live_event(RecordCreated(record("a", 1)))
        coordinator.apply_live_event(RecordUpdated(record("a", 1, 2, guest="x")))
        assert notify.call_count == 1

    def test_snapshot_does_not_notify(self, coordinator, notify):
        coordinator.apply_snapshot([record("a", 1), record("b", 2)])
        coordinator.apply_catchup(at(0), [record("a", 1, 3, guest="x")])
        notify.assert_not_called()

    def test_notification_sees_settled_state(self):
        seen = []
        coordinator = SyncCoordinator(on_new_record=lambda r: seen.append(len(coordinator)))
        coordinator.apply_catchup(at(0), [record("a", 1), record("b", 2), record("c", 3)])
        assert seen == [3, 3, 3]

    def test_change_callback(self):
        on_change = MagicMock()
        coordinator = SyncCoordinator(on_change=on_change)
        coordinator.apply_catchup(at(0), [record("a", 1)])
        coordinator.apply_catchup(at(0), [record("a", 1)])
        assert on_change.call_count == 1
        assert on_change.call_args.args[0].inserted == ["a"]


class TestQueries:
    """Tests for reading local state."""

    def test_records_newest_first(self, coordinator):
        coordinator.apply_snapshot([record("a", 1), record("c", 3), record("b", 2)])
        assert [r.id for r in coordinator.records] == ["c", "b", "a"]

    def test_returned_records_are_copies(self, coordinator):
        coordinator.apply_snapshot([record("a", 1, tags=["vip"])])
        coordinator.get("a").payload["tags"].append("late")
        assert coordinator.get("a").payload == {"tags": ["vip"]}

    def test_get_missing(self, coordinator):
        assert coordinator.get("missing") is None
        assert coordinator.watermark is None

    def test_deletion_memory_is_bounded(self, coordinator):
        for i in range(MAX_REMEMBERED_DELETIONS + 1):
            coordinator.apply_live_event(RecordDeleted(f"r{i}"))
        # The oldest deletion was forgotten, so its id can be inserted again
        coordinator.apply_catchup(at(0), [record("r0", 1)])
        assert "r0" in coordinator
