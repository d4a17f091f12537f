from __future__ import annotations

import json
import threading
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from crash_heartbeat.contracts import HeartbeatRecord
from crash_heartbeat.storage import InMemoryKeyValueStorage, JsonFileKeyValueStorage
from crash_heartbeat.store import SharedHeartbeatStore, WatchSet


class _BrokenStorage:
    def get_item(self, key: str) -> str | None:
        raise OSError("storage disabled")

    def set_item(self, key: str, value: str) -> None:
        raise OSError("quota exceeded")


class TestSharedHeartbeatStore(unittest.TestCase):
    def test_first_write_creates_record(self) -> None:
        store = SharedHeartbeatStore(InMemoryKeyValueStorage())

        record = store.write_heartbeat("A", now_ms=100, page="/home", meta={"release": "1.2"})

        self.assertEqual(
            record,
            HeartbeatRecord(
                process_id="A",
                timestamp_ms=100,
                page="/home",
                normal_exit=False,
                meta={"release": "1.2"},
            ),
        )
        self.assertEqual(store.load_all(), {"A": record})

    def test_timestamp_tracks_latest_increasing_write(self) -> None:
        store = SharedHeartbeatStore(InMemoryKeyValueStorage())

        for ts in (100, 250, 900, 1500):
            store.write_heartbeat("A", now_ms=ts)

        self.assertEqual(store.get("A").timestamp_ms, 1500)  # type: ignore[union-attr]

    def test_timestamp_never_moves_backwards(self) -> None:
        store = SharedHeartbeatStore(InMemoryKeyValueStorage())
        store.write_heartbeat("A", now_ms=2000)

        store.write_heartbeat("A", now_ms=1000)

        self.assertEqual(store.get("A").timestamp_ms, 2000)  # type: ignore[union-attr]

    def test_unspecified_meta_keeps_previous_metadata(self) -> None:
        store = SharedHeartbeatStore(InMemoryKeyValueStorage())
        store.write_heartbeat("A", now_ms=1, page="/a", meta={"user": "u1"})

        store.write_heartbeat("A", now_ms=2, page=None, meta=None)
        store.write_heartbeat("A", now_ms=3, meta={"release": "2"})

        record = store.get("A")
        assert record is not None
        self.assertEqual(record.meta, {"user": "u1", "release": "2"})
        self.assertEqual(record.page, "/a")

    def test_heartbeat_after_normal_exit_clears_flag(self) -> None:
        store = SharedHeartbeatStore(InMemoryKeyValueStorage())
        store.write_heartbeat("A", now_ms=1)
        self.assertTrue(store.mark_normal_exit("A"))

        store.write_heartbeat("A", now_ms=2)

        self.assertFalse(store.get("A").normal_exit)  # type: ignore[union-attr]

    def test_mark_normal_exit_without_record_is_noop(self) -> None:
        store = SharedHeartbeatStore(InMemoryKeyValueStorage())

        self.assertFalse(store.mark_normal_exit("missing"))
        self.assertEqual(store.load_all(), {})

    def test_corrupt_state_reads_as_empty(self) -> None:
        storage = InMemoryKeyValueStorage()
        storage.set_item("__session_heartbeat__", "{not-json")
        store = SharedHeartbeatStore(storage)

        self.assertEqual(store.load_all(), {})

        store.write_heartbeat("A", now_ms=5)
        self.assertEqual(list(store.load_all()), ["A"])

    def test_non_object_state_and_malformed_entries_are_dropped(self) -> None:
        storage = InMemoryKeyValueStorage()
        storage.set_item("__session_heartbeat__", json.dumps([1, 2, 3]))
        self.assertEqual(SharedHeartbeatStore(storage).load_all(), {})

        storage.set_item(
            "__session_heartbeat__",
            json.dumps(
                {
                    "ok": {"process_id": "ok", "timestamp_ms": 10, "normal_exit": True},
                    "bad": "not-a-record",
                    "partial": {"timestamp_ms": "later"},
                }
            ),
        )
        records = SharedHeartbeatStore(storage).load_all()

        self.assertEqual(set(records), {"ok", "partial"})
        self.assertTrue(records["ok"].normal_exit)
        self.assertEqual(records["partial"].process_id, "partial")
        self.assertEqual(records["partial"].timestamp_ms, 0)

    def test_failing_storage_is_swallowed(self) -> None:
        store = SharedHeartbeatStore(_BrokenStorage())

        record = store.write_heartbeat("A", now_ms=1)

        self.assertEqual(record.process_id, "A")
        self.assertEqual(store.load_all(), {})
        self.assertFalse(store.save_all({"A": record}))
        self.assertFalse(store.mark_normal_exit("A"))

    def test_absent_storage_is_swallowed(self) -> None:
        store = SharedHeartbeatStore(None)

        store.write_heartbeat("A", now_ms=1)

        self.assertEqual(store.load_all(), {})

    def test_each_process_writes_its_own_key(self) -> None:
        storage = InMemoryKeyValueStorage()
        first = SharedHeartbeatStore(storage)
        second = SharedHeartbeatStore(storage)

        first.write_heartbeat("X", now_ms=1)
        second.write_heartbeat("Y", now_ms=2)

        self.assertEqual(set(first.load_all()), {"X", "Y"})


class TestJsonFileSharing(unittest.TestCase):
    def test_two_handles_on_one_file_see_each_other(self) -> None:
        with TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "shared" / "heartbeats.json"
            first = SharedHeartbeatStore(JsonFileKeyValueStorage(path))
            second = SharedHeartbeatStore(JsonFileKeyValueStorage(path))

            first.write_heartbeat("X", now_ms=10, page="/x")
            second.write_heartbeat("Y", now_ms=20)

            records = first.load_all()
            self.assertEqual(set(records), {"X", "Y"})
            self.assertEqual(records["X"].page, "/x")
            self.assertTrue(path.exists())

    def test_corrupt_file_reads_as_empty(self) -> None:
        with TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "heartbeats.json"
            path.write_text("{broken", encoding="utf-8")
            store = SharedHeartbeatStore(JsonFileKeyValueStorage(path))

            self.assertEqual(store.load_all(), {})

    def test_write_over_corrupt_file_starts_fresh(self) -> None:
        with TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "heartbeats.json"
            path.write_text("{broken", encoding="utf-8")
            store = SharedHeartbeatStore(JsonFileKeyValueStorage(path))

            first = store.write_heartbeat("X", now_ms=1)
            store.write_heartbeat("X", now_ms=2)

            self.assertIsNotNone(first)
            self.assertEqual(store.get("X").timestamp_ms, 2)  # type: ignore[union-attr]
            self.assertIsInstance(json.loads(path.read_text(encoding="utf-8")), dict)

    def test_write_over_non_object_file_starts_fresh(self) -> None:
        with TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "heartbeats.json"
            path.write_text("[1, 2, 3]", encoding="utf-8")
            store = SharedHeartbeatStore(JsonFileKeyValueStorage(path))

            store.write_heartbeat("X", now_ms=1)
            self.assertTrue(store.mark_normal_exit("X"))

            self.assertTrue(store.get("X").normal_exit)  # type: ignore[union-attr]

    def test_handles_in_one_process_write_from_many_threads(self) -> None:
        with TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "heartbeats.json"
            handles = [JsonFileKeyValueStorage(path), JsonFileKeyValueStorage(path)]
            errors: list[BaseException] = []

            def _writer(storage: JsonFileKeyValueStorage, key: str) -> None:
                try:
                    for index in range(50):
                        storage.set_item(key, str(index))
                except BaseException as exc:  # noqa: BLE001 - collected for the assertion
                    errors.append(exc)

            threads = [
                threading.Thread(target=_writer, args=(handle, f"k{n}"))
                for n, handle in enumerate(handles)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            self.assertEqual(errors, [])
            self.assertIsInstance(json.loads(path.read_text(encoding="utf-8")), dict)
            self.assertEqual(list(Path(tmp_dir).glob("*.tmp")), [])


class TestWatchSet(unittest.TestCase):
    def test_beat_reports_new_clients(self) -> None:
        watch = WatchSet()

        self.assertTrue(watch.beat("A", now_ms=0))
        self.assertFalse(watch.beat("A", now_ms=1000))
        self.assertEqual(len(watch), 1)
        self.assertIn("A", watch)

    def test_beat_refreshes_and_keeps_first_seen(self) -> None:
        watch = WatchSet()
        watch.beat("A", now_ms=0, page="/a", meta={"k": 1})

        watch.beat("A", now_ms=1000, meta={"j": 2})

        client = watch.get("A")
        assert client is not None
        self.assertEqual(client.last_beat_ms, 1000)
        self.assertEqual(client.first_seen_ms, 0)
        self.assertEqual(client.page, "/a")
        self.assertEqual(client.meta, {"k": 1, "j": 2})

    def test_remove_and_clear(self) -> None:
        watch = WatchSet()
        watch.beat("A", now_ms=0)
        watch.beat("B", now_ms=0)

        self.assertTrue(watch.remove("A"))
        self.assertFalse(watch.remove("A"))
        watch.clear()
        self.assertEqual(len(watch), 0)

    def test_snapshot_is_a_copy(self) -> None:
        watch = WatchSet()
        watch.beat("A", now_ms=0)

        snap = watch.snapshot()
        del snap["A"]

        self.assertIn("A", watch)

    def test_concurrent_beats_are_safe(self) -> None:
        watch = WatchSet()
        started = threading.Barrier(5)

        def writer(idx: int) -> None:
            started.wait()
            for j in range(50):
                watch.beat(f"{idx}-{j}", now_ms=j)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        started.wait()
        for thread in threads:
            thread.join()

        self.assertEqual(len(watch), 200)


if __name__ == "__main__":
    unittest.main()
