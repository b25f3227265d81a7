"""Snapshot store: named, immutable captures of workspace state.

Layout under the shared store::

    snapshots/<name>/snapshot.json       canonical metadata (written last)
    snapshots/<name>/tracked-files.txt
    snapshots/<name>/recent-commits.txt
    snapshots/<name>/git-status.txt
    snapshots/<name>/manifests/<path>

``snapshot.json`` is created with ``create_exclusive`` and acts as the commit
point: a snapshot without it was never completed and is ignored.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .exceptions import RecordNotFoundError, SnapshotExistsError
from .git import GitRepository
from .models import Snapshot, utc_now
from .store import KeyValueStore, validate_key

logger = logging.getLogger(__name__)

__all__ = ["SnapshotStore", "list_workspace_files", "hash_file", "is_excluded"]

PREFIX = "snapshots"


def hash_file(path: Path) -> Optional[str]:
    """SHA-256 of a file's content, None if it cannot be read."""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
    except OSError:
        return None
    return digest.hexdigest()


def is_excluded(path: str, exclude: Sequence[str]) -> bool:
    return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in exclude)


def list_workspace_files(workspace: Path, git: Optional[GitRepository] = None,
                         exclude: Sequence[str] = ()) -> List[str]:
    """
    Tracked plus untracked-but-not-ignored files present on disk, as sorted
    relative paths.

    Falls back to a directory walk (skipping ``.git``) outside a repository.
    """
    workspace = Path(workspace)
    if git is not None and git.is_repository():
        # ls-files still lists tracked files deleted from the working tree
        files = {
            f for f in set(git.tracked_files()) | set(git.untracked_files())
            if (workspace / f).is_file()
        }
    else:
        files = set()
        for root, dirs, names in os.walk(workspace):
            dirs[:] = [d for d in dirs if d != ".git"]
            for name in names:
                files.add((Path(root) / name).relative_to(workspace).as_posix())
    return sorted(f for f in files if not is_excluded(f, exclude))


class SnapshotStore:
    """Capture, list and load snapshots for one workspace."""

    def __init__(
        self,
        store: KeyValueStore,
        workspace: Path,
        git: Optional[GitRepository] = None,
        manifest_files: Iterable[str] = (),
        exclude: Sequence[str] = (),
        history_count: int = 10,
    ):
        self.store = store
        self.workspace = Path(workspace).resolve()
        self.git = git
        self.manifest_files = list(manifest_files)
        self.exclude = list(exclude)
        self.history_count = history_count

    def _key(self, name: str, *parts: str) -> str:
        return validate_key("/".join([PREFIX, name, *parts]))

    def _in_repo(self) -> bool:
        return self.git is not None and self.git.is_repository()

    def exists(self, name: str) -> bool:
        return self.store.exists(self._key(name, "snapshot.json"))

    def current_files(self) -> List[str]:
        return list_workspace_files(self.workspace, self.git, self.exclude)

    def current_hashes(self, files: Iterable[str]) -> Dict[str, str]:
        hashes = {}
        for rel in files:
            digest = hash_file(self.workspace / rel)
            if digest is not None:
                hashes[rel] = digest
        return hashes

    def capture(self, name: str) -> Snapshot:
        """
        Capture the workspace under ``name``.

        Raises:
            SnapshotExistsError: If a snapshot with that name already exists.
        """
        if self.exists(name):
            raise SnapshotExistsError(f"Snapshot {name} already exists", name=name)

        files = self.current_files()
        in_repo = self._in_repo()
        snapshot = Snapshot(
            name=name,
            created=utc_now(),
            commit=self.git.head() if in_repo else None,
            branch=self.git.current_branch() if in_repo else None,
            tracked_files=files,
            file_hashes=self.current_hashes(files),
            history=self.git.log_oneline(self.history_count) if in_repo else [],
            working_tree_status=self.git.status_porcelain() if in_repo else [],
        )

        for manifest in self.manifest_files:
            source = self.workspace / manifest
            if source.is_file():
                self.store.put(self._key(name, "manifests", manifest), source.read_bytes())
                snapshot.manifests.append(manifest)

        self.store.put_text(self._key(name, "tracked-files.txt"), "\n".join(files) + "\n")
        self.store.put_text(self._key(name, "recent-commits.txt"), "\n".join(snapshot.history) + "\n")
        self.store.put_text(
            self._key(name, "git-status.txt"), "\n".join(snapshot.working_tree_status) + "\n"
        )

        payload = json.dumps(snapshot.to_dict(), indent=2, sort_keys=True).encode("utf-8")
        if not self.store.create_exclusive(self._key(name, "snapshot.json"), payload):
            raise SnapshotExistsError(f"Snapshot {name} already exists", name=name)

        logger.info(f"✓ Snapshot {name} captured ({len(files)} files, commit {snapshot.commit})")
        return snapshot

    def load(self, name: str) -> Snapshot:
        """
        Raises:
            RecordNotFoundError: If no completed snapshot has that name.
        """
        data = self.store.get_json(self._key(name, "snapshot.json"))
        if data is None:
            raise RecordNotFoundError(
                f"Snapshot {name} not found", record_type="snapshot", record_id=name
            )
        return Snapshot.from_dict(data)

    def list_names(self) -> List[str]:
        names = set()
        for key in self.store.list(PREFIX):
            parts = key.split("/")
            if len(parts) == 3 and parts[2] == "snapshot.json":
                names.add(parts[1])
        return sorted(names)

    def manifest_content(self, name: str, manifest: str) -> Optional[bytes]:
        return self.store.get(self._key(name, "manifests", manifest))
