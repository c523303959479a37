"""Tests for the change queue and the version store."""

import pytest

from pystudysync.exceptions import StudySyncValidationError
from pystudysync.models import ChangeOperation, DataType
from pystudysync.storage import MemoryStore, SafeStore
from pystudysync.sync.queue import ChangeQueue
from pystudysync.sync.versions import VersionStore
from pystudysync.utils import SYNC_QUEUE_KEY


@pytest.fixture
def memory_store():
    """Provide an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def safe_store(memory_store):
    return SafeStore(memory_store)


@pytest.fixture
def versions(safe_store):
    return VersionStore(safe_store)


@pytest.fixture
def queue(safe_store, versions):
    return ChangeQueue(safe_store, versions)


class TestVersionStore:
    """Tests for VersionStore."""

    def test_missing_version_is_zero(self, versions):
        """Test that a data type never synced reads as version 0."""
        assert versions.get_local_version(DataType.FOCUS_RECORDS) == 0

    def test_set_and_get(self, versions, memory_store):
        """Test that versions are persisted under the per-type key."""
        versions.set_local_version(DataType.PLAYLISTS, 7)

        assert versions.get_local_version(DataType.PLAYLISTS) == 7
        assert memory_store.get("swm_sync_version_playlists") == 7

    @pytest.mark.parametrize("raw,expected", [("5", 5), ("abc", 0), (None, 0), (-3, 0)])
    def test_corrupt_values_coerced(self, versions, memory_store, raw, expected):
        """Test integer coercion of persisted values."""
        memory_store.set("swm_sync_version_focus_records", raw)
        assert versions.get_local_version(DataType.FOCUS_RECORDS) == expected


class TestEnqueue:
    """Tests for ChangeQueue.enqueue."""

    def test_base_version_is_local_plus_one(self, queue, versions):
        """Test base version computation."""
        versions.set_local_version(DataType.FOCUS_SETTINGS, 4)

        entry = queue.enqueue(DataType.FOCUS_SETTINGS, {"focus": 25})

        assert entry.base_version == 5
        assert entry.operation == ChangeOperation.UPDATE
        assert entry.id.startswith("focus_settings_")

    def test_accepts_wire_name(self, queue):
        """Test that data types can be given by wire name."""
        entry = queue.enqueue("playlists", {"playlists": []})
        assert entry.data_type == DataType.PLAYLISTS

    def test_unknown_data_type_raises(self, queue):
        """Test that an unknown data type fails fast."""
        with pytest.raises(StudySyncValidationError, match="Invalid data type"):
            queue.enqueue("bogus", {})
        assert len(queue) == 0

    def test_collapses_per_data_type(self, queue):
        """Test that a newer snapshot replaces the queued one."""
        queue.enqueue(DataType.USER_SETTINGS, {"v": 1})
        queue.enqueue(DataType.FOCUS_SETTINGS, {"v": 1})
        queue.enqueue(DataType.USER_SETTINGS, {"v": 2})

        assert len(queue) == 2
        assert queue.pending_for(DataType.USER_SETTINGS)[0].data == {"v": 2}
        assert queue.pending_types() == [
            DataType.FOCUS_SETTINGS,
            DataType.USER_SETTINGS,
        ]

    def test_update_then_delete_collapses_to_delete(self, queue):
        """Test delete dominance when the delete comes last."""
        queue.enqueue(DataType.SHARE_CONFIG, {"a": 1}, ChangeOperation.UPDATE)
        queue.enqueue(DataType.SHARE_CONFIG, None, ChangeOperation.DELETE)

        entries = queue.pending_for(DataType.SHARE_CONFIG)
        assert len(entries) == 1
        assert entries[0].operation == ChangeOperation.DELETE

    def test_delete_then_update_keeps_delete(self, queue):
        """Test that a queued delete is never replaced by a non-delete."""
        delete = queue.enqueue(DataType.SHARE_CONFIG, None, ChangeOperation.DELETE)

        returned = queue.enqueue(
            DataType.SHARE_CONFIG, {"a": 2}, ChangeOperation.UPDATE
        )

        entries = queue.pending_for(DataType.SHARE_CONFIG)
        assert len(entries) == 1
        assert entries[0].operation == ChangeOperation.DELETE
        assert returned.id == delete.id

    def test_delete_replaces_delete(self, queue):
        """Test that a newer delete replaces an older one."""
        first = queue.enqueue(DataType.SHARE_CONFIG, None, ChangeOperation.DELETE)
        second = queue.enqueue(DataType.SHARE_CONFIG, None, ChangeOperation.DELETE)

        assert len(queue) == 1
        assert queue.entries[0].id == second.id != first.id

    def test_record_changes_collapse_per_record(self, queue):
        """Test record-level entries keyed by record id."""
        queue.enqueue(DataType.FOCUS_RECORDS, {"id": 1}, ChangeOperation.ADD, 1)
        queue.enqueue(DataType.FOCUS_RECORDS, {"id": 2}, ChangeOperation.ADD, 2)
        queue.enqueue(
            DataType.FOCUS_RECORDS, {"id": 1, "x": 1}, ChangeOperation.UPDATE, 1
        )
        queue.enqueue(DataType.FOCUS_RECORDS, {"id": 2}, ChangeOperation.DELETE, 2)
        queue.enqueue(DataType.FOCUS_RECORDS, {"id": 2}, ChangeOperation.UPDATE, 2)

        by_record = {e.record_id: e for e in queue.entries}
        assert len(by_record) == 2
        assert by_record[1].operation == ChangeOperation.UPDATE
        assert by_record[1].data == {"id": 1, "x": 1}
        assert by_record[2].operation == ChangeOperation.DELETE

    def test_to_delta(self, queue):
        """Test conversion of entries into delta changes."""
        record = queue.enqueue(
            DataType.FOCUS_RECORDS, {"id": 1}, ChangeOperation.ADD, record_id=1
        )
        snapshot = queue.enqueue(DataType.PLAYLISTS, {"playlists": []})

        assert record.to_delta() == {
            "action": "add",
            "record": {"id": 1},
            "timestamp": record.timestamp,
        }
        assert snapshot.to_delta()["data"] == {"playlists": []}


class TestDurability:
    """Tests for queue persistence."""

    def test_persisted_after_every_enqueue(self, queue, safe_store, versions):
        """Test that a fresh queue on the same store sees queued entries."""
        queue.enqueue(DataType.FOCUS_SETTINGS, {"focus": 25})

        restored = ChangeQueue(safe_store, versions)

        assert len(restored) == 1
        assert restored.entries[0].data == {"focus": 25}

    def test_corrupt_entries_skipped_on_load(self, memory_store, safe_store, versions):
        """Test that unreadable entries are dropped, valid ones kept."""
        memory_store.set(
            SYNC_QUEUE_KEY,
            [
                {"id": "x", "data_type": "unknown"},
                {"data_type": "playlists"},
                "garbage",
                {
                    "id": "ok",
                    "data_type": "playlists",
                    "data": {"playlists": []},
                    "base_version": 2,
                    "timestamp": 1,
                    "operation": "update",
                },
            ],
        )

        restored = ChangeQueue(safe_store, versions)

        assert [e.id for e in restored.entries] == ["ok"]

    def test_malformed_queue_ignored(self, memory_store, safe_store, versions):
        """Test that a non-list queue value yields an empty queue."""
        memory_store.set(SYNC_QUEUE_KEY, {"not": "a list"})
        assert len(ChangeQueue(safe_store, versions)) == 0


class TestDequeue:
    """Tests for ChangeQueue.dequeue_synced and clear."""

    def test_dequeue_by_type(self, queue):
        """Test removal of every entry of the synced types."""
        queue.enqueue(DataType.FOCUS_SETTINGS, {})
        queue.enqueue(DataType.PLAYLISTS, {})

        removed = queue.dequeue_synced({DataType.FOCUS_SETTINGS})

        assert removed == 1
        assert queue.pending_types() == [DataType.PLAYLISTS]

    def test_dequeue_only_given_ids(self, queue):
        """Test that entries queued after an upload started survive."""
        old = queue.enqueue(DataType.FOCUS_RECORDS, {"id": 1}, record_id=1)
        queue.enqueue(DataType.FOCUS_RECORDS, {"id": 2}, record_id=2)

        queue.dequeue_synced([DataType.FOCUS_RECORDS], entry_ids=[old.id])

        assert [e.record_id for e in queue.entries] == [2]

    def test_dequeue_persists(self, queue, safe_store, versions):
        """Test that dequeuing is written through."""
        queue.enqueue(DataType.FOCUS_SETTINGS, {})
        queue.dequeue_synced([DataType.FOCUS_SETTINGS])

        assert len(ChangeQueue(safe_store, versions)) == 0

    def test_clear(self, queue):
        """Test that clear drops every entry."""
        queue.enqueue(DataType.FOCUS_SETTINGS, {})
        queue.enqueue(DataType.PLAYLISTS, {})

        queue.clear()

        assert len(queue) == 0
        assert queue.has_pending() is False
