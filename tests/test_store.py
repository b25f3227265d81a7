"""Unit tests for the shared-state key-value store.

Covers both backends against the same contract:
- Atomic put (a concurrent reader never sees a torn value)
- Write-once create_exclusive
- Appends and read-modify-write under concurrency
- Key validation
"""

import json
import threading

import pytest

from agent_safeguards.exceptions import StoreError
from agent_safeguards.store import FileSystemStore, MemoryStore, validate_key


@pytest.fixture(params=["filesystem", "memory"])
def store(request, tmp_path):
    if request.param == "filesystem":
        return FileSystemStore(tmp_path / "shared")
    return MemoryStore()


class TestKeyValidation:
    """Tests for key normalisation."""

    def test_relative_key_is_accepted(self):
        assert validate_key("status/schema.json") == "status/schema.json"

    def test_backslashes_are_normalised(self):
        assert validate_key("status\\schema.json") == "status/schema.json"

    @pytest.mark.parametrize("key", ["", "   ", "/etc/passwd", "../outside", "status/../../x"])
    def test_invalid_keys_are_rejected(self, key):
        with pytest.raises(StoreError):
            validate_key(key)


class TestStoreContract:
    """Behaviour shared by every backend."""

    def test_get_missing_key_returns_none(self, store):
        assert store.get("missing/key") is None
        assert store.get_json("missing.json") is None

    def test_put_then_get(self, store):
        store.put("a/b.txt", b"hello")
        assert store.get("a/b.txt") == b"hello"
        assert store.exists("a/b.txt")

    def test_put_replaces_value(self, store):
        store.put_text("a.txt", "one")
        store.put_text("a.txt", "two")
        assert store.get_text("a.txt") == "two"

    def test_json_helpers(self, store):
        store.put_json("state.json", {"count": 3, "items": ["x"]})
        assert store.get_json("state.json") == {"count": 3, "items": ["x"]}

    def test_corrupt_json_raises_store_error(self, store):
        store.put_text("bad.json", "{not json")
        with pytest.raises(StoreError):
            store.get_json("bad.json")

    def test_create_exclusive_is_write_once(self, store):
        assert store.create_exclusive("handoffs/a-complete.md", b"first") is True
        assert store.create_exclusive("handoffs/a-complete.md", b"second") is False
        assert store.get("handoffs/a-complete.md") == b"first"

    def test_append_adds_lines(self, store):
        store.append("log.jsonl", json.dumps({"n": 1}))
        store.append("log.jsonl", json.dumps({"n": 2}) + "\n")
        assert store.read_jsonl("log.jsonl") == [{"n": 1}, {"n": 2}]
        assert len(store.read_lines("log.jsonl")) == 2

    def test_read_jsonl_skips_corrupt_lines(self, store):
        store.append("log.jsonl", '{"ok": true}')
        store.append("log.jsonl", "garbage")
        assert store.read_jsonl("log.jsonl") == [{"ok": True}]

    def test_delete(self, store):
        store.put_text("x.txt", "x")
        assert store.delete("x.txt") is True
        assert store.delete("x.txt") is False
        assert not store.exists("x.txt")

    def test_list_by_prefix(self, store):
        store.put_text("status/a.json", "{}")
        store.put_text("status/b.json", "{}")
        store.put_text("handoffs/a-complete.md", "done")
        assert store.list("status") == ["status/a.json", "status/b.json"]
        assert store.list("nothing") == []
        assert "handoffs/a-complete.md" in store.list()

    def test_update_json_mutates_in_place(self, store):
        store.update_json("counter.json", lambda d: d.update(count=d.get("count", 0) + 1))
        result = store.update_json("counter.json", lambda d: d.update(count=d.get("count", 0) + 1))
        assert result == {"count": 2}
        assert store.get_json("counter.json") == {"count": 2}

    def test_update_json_replacement_value(self, store):
        store.put_json("x.json", {"a": 1})
        assert store.update_json("x.json", lambda d: {"b": 2}) == {"b": 2}
        assert store.get_json("x.json") == {"b": 2}

    def test_concurrent_updates_are_not_lost(self, store):
        def increment():
            for _ in range(20):
                store.update_json("counter.json", lambda d: d.update(count=d.get("count", 0) + 1))

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get_json("counter.json")["count"] == 80

    def test_concurrent_appends_keep_every_line(self, store):
        def writer(n):
            for i in range(25):
                store.append("events.jsonl", json.dumps({"writer": n, "i": i}))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.read_jsonl("events.jsonl")) == 100


class TestFileSystemStore:
    """Filesystem-specific behaviour."""

    def test_path_maps_into_root(self, tmp_path):
        store = FileSystemStore(tmp_path / "shared")
        assert store.path("status/a.json") == (tmp_path / "shared" / "status" / "a.json").resolve()

    def test_list_skips_locks_and_temp_files(self, tmp_path):
        store = FileSystemStore(tmp_path / "shared")
        store.append("log.txt", "line")
        (store.root / "status").mkdir()
        (store.root / "status" / ".tmp-abc-a.json").write_text("partial")
        assert store.list() == ["log.txt"]

    def test_put_leaves_no_temp_files(self, tmp_path):
        store = FileSystemStore(tmp_path / "shared")
        for i in range(5):
            store.put_json("status/a.json", {"i": i})
        leftovers = [p.name for p in (store.root / "status").iterdir()]
        assert leftovers == ["a.json"]

    def test_directory_key_raises(self, tmp_path):
        store = FileSystemStore(tmp_path / "shared")
        store.put_text("dir/file.txt", "x")
        with pytest.raises(StoreError):
            store.get("dir")

    def test_two_instances_share_state(self, tmp_path):
        first = FileSystemStore(tmp_path / "shared")
        second = FileSystemStore(tmp_path / "shared")
        first.put_json("status/a.json", {"phase": "GREEN"})
        assert second.get_json("status/a.json") == {"phase": "GREEN"}
        assert second.create_exclusive("handoffs/a-complete.md", b"x")
        assert not first.create_exclusive("handoffs/a-complete.md", b"y")

    def test_concurrent_reader_never_sees_torn_write(self, tmp_path):
        """A reader polling during rewrites sees only complete documents."""
        store = FileSystemStore(tmp_path / "shared")
        big_a = {"phase": "GREEN", "payload": "a" * 50000}
        big_b = {"phase": "REFACTOR", "payload": "b" * 80000}
        store.put_json("status/agent.json", big_a)

        stop = threading.Event()
        errors = []
        reads = []

        def reader():
            while not stop.is_set():
                try:
                    value = store.get_json("status/agent.json")
                except StoreError as e:
                    errors.append(e)
                    continue
                reads.append(value)
                if value not in (big_a, big_b):
                    errors.append(ValueError("torn read"))

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for i in range(200):
                store.put_json("status/agent.json", big_a if i % 2 else big_b)
        finally:
            stop.set()
            thread.join()

        assert errors == []
        assert reads
