"""
Shared-State Key-Value Store

The coordination layer treats the shared directory tree as a small key-value
database. Keys are ``/``-separated relative paths (``status/schema.json``).
Every backing store honours the same contract:

- ``put`` is atomic: a concurrent reader sees the old or the new value, never a mix
- ``create_exclusive`` is write-once: the first caller wins, later calls are no-ops
- ``append`` adds one line to a log without losing concurrent appends
- ``update_json`` is an atomic read-modify-write

FileSystemStore implements this with temp-file + ``os.replace`` and filelock
for the operations that need mutual exclusion. MemoryStore is the in-process
equivalent used by tests.
"""

import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional

from filelock import FileLock, Timeout

from .exceptions import StoreError

logger = logging.getLogger(__name__)

__all__ = [
    "KeyValueStore",
    "FileSystemStore",
    "MemoryStore",
    "validate_key",
]

TEMP_PREFIX = ".tmp-"
LOCKS_DIR = ".locks"


def validate_key(key: str) -> str:
    """Normalise a store key and reject anything that could escape the root.

    Raises:
        StoreError: If the key is empty, absolute or contains ``..``.
    """
    if not key or not key.strip():
        raise StoreError("Store key cannot be empty", key=key)
    normalised = key.replace("\\", "/")
    path = PurePosixPath(normalised)
    if path.is_absolute() or ".." in path.parts:
        raise StoreError(f"Invalid store key: {key}", key=key)
    return str(path)


# ==============================================================================
# SECTION 1: Store Contract
# ==============================================================================

class KeyValueStore(ABC):
    """Interface every shared-state backend satisfies."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is absent."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Atomically replace the value stored under ``key``."""

    @abstractmethod
    def create_exclusive(self, key: str, data: bytes) -> bool:
        """Create ``key`` only if absent. Returns False when it already existed."""

    @abstractmethod
    def append(self, key: str, line: str) -> None:
        """Append one line (newline added) to the value under ``key``."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns False when it did not exist."""

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """Return all keys under ``prefix``, sorted."""

    @abstractmethod
    def update_json(
        self,
        key: str,
        operation: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        """Atomic read-modify-write of a JSON object.

        ``operation`` receives the current object ({} when absent) and either
        mutates it in place (returning None) or returns a replacement.
        """

    # Convenience helpers shared by all backends

    def get_text(self, key: str) -> Optional[str]:
        data = self.get(key)
        return None if data is None else data.decode("utf-8")

    def put_text(self, key: str, text: str) -> None:
        self.put(key, text.encode("utf-8"))

    def get_json(self, key: str) -> Optional[Any]:
        text = self.get_text(key)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt JSON under {key}: {e}", key=key)

    def put_json(self, key: str, value: Any) -> None:
        self.put_text(key, json.dumps(value, indent=2, sort_keys=True))

    def read_lines(self, key: str) -> List[str]:
        text = self.get_text(key)
        if not text:
            return []
        return [line for line in text.splitlines() if line.strip()]

    def read_jsonl(self, key: str) -> List[Dict[str, Any]]:
        entries = []
        for line in self.read_lines(key):
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping corrupt line in {key}: {line[:80]}")
        return entries


# ==============================================================================
# SECTION 2: Filesystem Store
# ==============================================================================

class FileSystemStore(KeyValueStore):
    """
    Key-value store over a directory tree.

    Features:
    - Atomic writes: temp file in the target directory, fsync, ``os.replace``
    - Write-once markers: temp file hard-linked into place (fails if present)
    - Process-safe appends and read-modify-write through filelock
    """

    def __init__(self, root: Path, lock_timeout: float = 10.0):
        """
        Initialize store rooted at ``root``.

        Args:
            root: Directory holding the shared state (created if missing)
            lock_timeout: Seconds to wait for a file lock
        """
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.locks_dir = self.root / LOCKS_DIR
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout

    def path(self, key: str) -> Path:
        """Filesystem location of ``key``."""
        return self.root / validate_key(key)

    def acquire_lock(self, key: str, timeout: Optional[float] = None) -> FileLock:
        """
        Acquire the lock guarding ``key``.

        Returns:
            Acquired FileLock (use as context manager)

        Raises:
            StoreError: If the lock cannot be acquired within timeout
        """
        if timeout is None:
            timeout = self.lock_timeout
        lock_name = validate_key(key).replace("/", "__")
        lock = FileLock(str(self.locks_dir / f"{lock_name}.lock"), timeout=timeout)
        try:
            lock.acquire()
            return lock
        except Timeout:
            raise StoreError(
                f"Could not acquire lock for {key} within {timeout}s. "
                f"Another process may be holding it.",
                key=key,
            )

    def get(self, key: str) -> Optional[bytes]:
        path = self.path(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except IsADirectoryError:
            raise StoreError(f"Key {key} refers to a directory", key=key)
        except OSError as e:
            raise StoreError(f"Failed to read {key}: {e}", key=key)

    def _write_temp(self, path: Path, data: bytes) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=TEMP_PREFIX, suffix=f"-{path.name}"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            Path(temp_name).unlink(missing_ok=True)
            raise
        return Path(temp_name)

    def put(self, key: str, data: bytes) -> None:
        path = self.path(key)
        try:
            temp_path = self._write_temp(path, data)
            try:
                os.replace(temp_path, path)
            except OSError:
                temp_path.unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StoreError(f"Failed to write {key}: {e}", key=key)

    def create_exclusive(self, key: str, data: bytes) -> bool:
        path = self.path(key)
        try:
            temp_path = self._write_temp(path, data)
            try:
                os.link(temp_path, path)
                return True
            except FileExistsError:
                return False
            finally:
                temp_path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create {key}: {e}", key=key)

    def append(self, key: str, line: str) -> None:
        path = self.path(key)
        with self.acquire_lock(key):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(line.rstrip("\n") + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise StoreError(f"Failed to append to {key}: {e}", key=key)

    def exists(self, key: str) -> bool:
        return self.path(key).is_file()

    def delete(self, key: str) -> bool:
        try:
            self.path(key).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Failed to delete {key}: {e}", key=key)

    def list(self, prefix: str = "") -> List[str]:
        base = self.path(prefix) if prefix else self.root
        if base.is_file():
            return [validate_key(prefix)]
        if not base.is_dir():
            return []
        keys = []
        for path in base.rglob("*"):
            if not path.is_file() or path.name.startswith(TEMP_PREFIX):
                continue
            rel = path.relative_to(self.root)
            if rel.parts and rel.parts[0] == LOCKS_DIR:
                continue
            keys.append(rel.as_posix())
        return sorted(keys)

    def update_json(
        self,
        key: str,
        operation: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
        max_retries: int = 3,
    ) -> Dict[str, Any]:
        for attempt in range(max_retries):
            try:
                with self.acquire_lock(key):
                    data = self.get_json(key) or {}
                    result = operation(data)
                    data_to_save = data if result is None else result
                    self.put_json(key, data_to_save)
                    return data_to_save
            except StoreError as e:
                if "Could not acquire lock" not in e.message or attempt == max_retries - 1:
                    raise
                wait_time = 0.1 * (2 ** attempt)
                logger.warning(f"Lock busy for {key}, retrying in {wait_time:.1f}s")
                time.sleep(wait_time)
        raise StoreError(f"update_json failed for {key}", key=key)


# ==============================================================================
# SECTION 3: In-Memory Store
# ==============================================================================

class MemoryStore(KeyValueStore):
    """Thread-safe in-memory store with the same contract as FileSystemStore."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(validate_key(key))

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[validate_key(key)] = bytes(data)

    def create_exclusive(self, key: str, data: bytes) -> bool:
        key = validate_key(key)
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = bytes(data)
            return True

    def append(self, key: str, line: str) -> None:
        key = validate_key(key)
        with self._lock:
            current = self._data.get(key, b"")
            self._data[key] = current + (line.rstrip("\n") + "\n").encode("utf-8")

    def exists(self, key: str) -> bool:
        with self._lock:
            return validate_key(key) in self._data

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(validate_key(key), None) is not None

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            if not prefix:
                return sorted(self._data)
            prefix = validate_key(prefix)
            return sorted(
                k for k in self._data if k == prefix or k.startswith(prefix + "/")
            )

    def update_json(
        self,
        key: str,
        operation: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        with self._lock:
            data = self.get_json(key) or {}
            result = operation(data)
            data_to_save = data if result is None else result
            self.put_json(key, data_to_save)
            return data_to_save
