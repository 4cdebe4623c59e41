"""
Key-value storage, local persistence and cross-tab channel tests
"""

import asyncio
import json
from unittest.mock import Mock

import pytest

from missao_sync.core.errors import PersistenceError
from missao_sync.model import operations, CommitmentKind
from missao_sync.sync.cross_tab import StorageEventChannel
from missao_sync.sync.persistence import LEGACY_STORAGE_KEY, STORAGE_KEY, LocalPersistence
from missao_sync.sync.storage import FileKeyValueStore, MemoryKeyValueStore, MemoryStorageArea


class TestMemoryStorage:
    """Test in-process storage shared by several contexts"""

    def test_writes_are_visible_to_every_context(self):
        area = MemoryStorageArea()
        first = MemoryKeyValueStore(area)
        second = MemoryKeyValueStore(area)

        first.set("k", "v")

        assert second.get("k") == "v"
        assert area.snapshot() == {"k": "v"}

    def test_other_contexts_are_notified_but_not_the_writer(self):
        area = MemoryStorageArea()
        writer = MemoryKeyValueStore(area)
        reader = MemoryKeyValueStore(area)
        writer_callback = Mock()
        reader_callback = Mock()
        writer.subscribe("k", writer_callback)
        reader.subscribe("k", reader_callback)

        writer.set("k", "v1")

        reader_callback.assert_called_once_with("v1")
        writer_callback.assert_not_called()

    def test_unchanged_value_is_not_reported(self):
        area = MemoryStorageArea()
        writer = MemoryKeyValueStore(area)
        reader = MemoryKeyValueStore(area)
        callback = Mock()
        reader.subscribe("k", callback)

        writer.set("k", "same")
        writer.set("k", "same")

        assert callback.call_count == 1

    def test_unsubscribe_and_close(self):
        area = MemoryStorageArea()
        writer = MemoryKeyValueStore(area)
        reader = MemoryKeyValueStore(area)
        callback = Mock()
        unsubscribe = reader.subscribe("k", callback)

        unsubscribe()
        unsubscribe()
        writer.set("k", "a")
        reader.close()
        reader.close()
        writer.set("k", "b")

        callback.assert_not_called()

    def test_failing_callback_does_not_block_others(self):
        area = MemoryStorageArea()
        writer = MemoryKeyValueStore(area)
        reader = MemoryKeyValueStore(area)
        good = Mock()
        reader.subscribe("k", Mock(side_effect=RuntimeError("boom")))
        reader.subscribe("k", good)

        writer.set("k", "v")

        good.assert_called_once_with("v")

    def test_quota_exceeded(self):
        store = MemoryKeyValueStore(MemoryStorageArea(quota_bytes=8))
        store.set("k", "1234")
        with pytest.raises(PersistenceError):
            store.set("k", "123456789")
        assert store.get("k") == "1234"

    @pytest.mark.asyncio
    async def test_notifications_are_queued_on_running_loop(self):
        area = MemoryStorageArea()
        writer = MemoryKeyValueStore(area)
        reader = MemoryKeyValueStore(area)
        callback = Mock()
        reader.subscribe("k", callback)

        writer.set("k", "v")
        callback.assert_not_called()

        await asyncio.sleep(0)
        callback.assert_called_once_with("v")


class TestFileStorage:
    """Test file-backed storage shared between processes"""

    def test_set_and_get(self, tmp_path):
        store = FileKeyValueStore(tmp_path / "state")
        assert store.get("missing") is None

        store.set("missao-ieab-state-v2", '{"a":1}')

        assert store.get("missao-ieab-state-v2") == '{"a":1}'
        assert store.path_for("missao-ieab-state-v2").name == "missao-ieab-state-v2.json"
        assert not list((tmp_path / "state").glob("*.tmp"))

    def test_keys_are_sanitized(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        assert store.path_for("a/b:c").name == "a_b_c.json"

    def test_write_failure_raises_persistence_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FileKeyValueStore(blocker / "state")

        with pytest.raises(PersistenceError):
            store.set("k", "v")

    @pytest.mark.asyncio
    async def test_poll_reports_other_writers_only(self, tmp_path):
        watcher = FileKeyValueStore(tmp_path, poll_interval=60)
        other = FileKeyValueStore(tmp_path, poll_interval=60)
        callback = Mock()
        watcher.subscribe("k", callback)

        try:
            watcher.set("k", "own write")
            assert watcher.poll() == 0

            other.set("k", "written elsewhere")
            assert watcher.poll() == 1
            callback.assert_called_once_with("written elsewhere")

            assert watcher.poll() == 0
        finally:
            watcher.close()
            other.close()

    @pytest.mark.asyncio
    async def test_background_watcher_delivers_changes(self, tmp_path):
        watcher = FileKeyValueStore(tmp_path, poll_interval=0.01)
        other = FileKeyValueStore(tmp_path)
        received = asyncio.Event()
        values = []

        def on_change(value):
            values.append(value)
            received.set()

        watcher.subscribe("k", on_change)
        try:
            other.set("k", "hello")
            await asyncio.wait_for(received.wait(), timeout=2)
            assert values == ["hello"]
        finally:
            await watcher.aclose()

    @pytest.mark.asyncio
    async def test_aclose_waits_for_watcher(self, tmp_path):
        watcher = FileKeyValueStore(tmp_path, poll_interval=0.01)
        watcher.subscribe("k", Mock())
        task = watcher._watch_task

        await watcher.aclose()
        await watcher.aclose()

        assert task.done()
        assert watcher._watch_task is None


class TestLocalPersistence:
    """Test snapshot load/save"""

    def test_load_empty(self):
        assert LocalPersistence(MemoryKeyValueStore()).load() is None

    def test_save_and_load(self, document):
        persistence = LocalPersistence(MemoryKeyValueStore())
        assert persistence.save(document) is True
        assert persistence.load() == document

    def test_save_is_idempotent(self, document):
        store = MemoryKeyValueStore()
        store.set = Mock(wraps=store.set)
        persistence = LocalPersistence(store)

        assert persistence.save(document) is True
        assert persistence.save(document) is False
        assert store.set.call_count == 1

    def test_legacy_key_fallback(self):
        store = MemoryKeyValueStore()
        legacy = {'goal': 80, 'totalDisciples': 30, 'locations': [{'id': 1, 'disciples': 30, 'cells': 5}]}
        store.set(LEGACY_STORAGE_KEY, json.dumps(legacy))

        loaded = LocalPersistence(store).load()

        assert loaded is not None
        assert loaded.find_location(1).base_disciples == 30

    def test_primary_key_wins_over_legacy(self, document):
        store = MemoryKeyValueStore()
        store.set(LEGACY_STORAGE_KEY, json.dumps({'goal': 5, 'locations': []}))
        store.set(STORAGE_KEY, document.to_json())

        assert LocalPersistence(store).load() == document

    def test_corrupt_snapshot_loads_as_none(self):
        store = MemoryKeyValueStore()
        store.set(STORAGE_KEY, "{not json")
        assert LocalPersistence(store).load() is None

    def test_invalid_snapshot_loads_as_none(self, document):
        data = document.to_dict()
        data['discipleGoal'] = 0
        store = MemoryKeyValueStore()
        store.set(STORAGE_KEY, json.dumps(data))
        assert LocalPersistence(store).load() is None

    def test_save_failure_raises(self, document):
        persistence = LocalPersistence(MemoryKeyValueStore(MemoryStorageArea(quota_bytes=16)))
        with pytest.raises(PersistenceError):
            persistence.save(document)


class TestStorageEventChannel:
    """Test the cross-tab channel"""

    def test_delivers_snapshots_from_other_contexts(self, document):
        area = MemoryStorageArea()
        writer = LocalPersistence(MemoryKeyValueStore(area))
        channel = StorageEventChannel(MemoryKeyValueStore(area), STORAGE_KEY)
        callback = Mock()
        channel.listen(callback)

        writer.save(document)

        callback.assert_called_once_with(document.to_json())

    def test_own_writes_are_not_delivered(self, document):
        store = MemoryKeyValueStore(MemoryStorageArea())
        channel = StorageEventChannel(store, STORAGE_KEY)
        callback = Mock()
        channel.listen(callback)

        LocalPersistence(store).save(document)

        callback.assert_not_called()

    def test_close_is_idempotent_and_stops_delivery(self, document):
        area = MemoryStorageArea()
        writer = LocalPersistence(MemoryKeyValueStore(area))
        channel = StorageEventChannel(MemoryKeyValueStore(area), STORAGE_KEY)
        callback = Mock()
        stop = channel.listen(callback)

        channel.close()
        channel.close()
        stop()
        writer.save(document)

        callback.assert_not_called()

    def test_listen_after_close(self):
        channel = StorageEventChannel(MemoryKeyValueStore(), STORAGE_KEY)
        channel.close()
        with pytest.raises(RuntimeError):
            channel.listen(Mock())

    def test_other_keys_are_ignored(self, document):
        area = MemoryStorageArea()
        writer = MemoryKeyValueStore(area)
        channel = StorageEventChannel(MemoryKeyValueStore(area), STORAGE_KEY)
        callback = Mock()
        channel.listen(callback)

        writer.set("unrelated", "x")
        writer.set(STORAGE_KEY, operations.set_goal(document, CommitmentKind.DISCIPLES, 9).to_json())

        assert callback.call_count == 1
