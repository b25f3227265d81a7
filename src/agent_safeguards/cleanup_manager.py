"""
Sandbox cleanup with retry and a deferred queue.

Removing an experiment worktree can fail while a child process still holds
files open (or on Windows, while anything does). Cleanup therefore:

1. Retries with exponential backoff (3 attempts, 2s/4s/8s)
2. Falls back to removing the directory by hand, then prunes git's records
3. Queues what still fails in ``deferred_cleanup.json`` for a later pass
"""

import gc
import logging
import os
import platform
import shutil
import stat
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import GitCommandError
from .git import GitRepository
from .models import utc_now
from .store import KeyValueStore

logger = logging.getLogger(__name__)

__all__ = ["DeferredCleanup", "WorkspaceCleanupManager"]


@dataclass
class DeferredCleanup:
    """Record of a failed cleanup for later retry."""
    path: str
    branch_name: Optional[str]
    first_failure: str
    last_attempt: str
    attempt_count: int
    failure_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'branch_name': self.branch_name,
            'first_failure': self.first_failure,
            'last_attempt': self.last_attempt,
            'attempt_count': self.attempt_count,
            'failure_reason': self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeferredCleanup':
        return cls(**data)


class WorkspaceCleanupManager:
    """Removes sandbox worktrees, branches and directories, retrying on failure."""

    DEFERRED_KEY = "deferred_cleanup.json"
    MAX_ATTEMPTS = 3
    BACKOFF_BASE = 2  # seconds

    def __init__(self, git: GitRepository, store: KeyValueStore,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            git: The main repository the worktrees belong to
            store: Where the deferred queue is kept
            sleep: Backoff wait (tests pass a no-op)
        """
        self.git = git
        self.store = store
        self.sleep = sleep

    def cleanup_worktree(self, path: Path, branch_name: Optional[str] = None) -> bool:
        """Remove a worktree and its branch with retry logic.

        Returns:
            True if cleanup succeeded, False if deferred
        """
        path = Path(path).resolve()
        logger.info(f"Starting worktree cleanup: {path}")

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            success, error = self._attempt_cleanup(path, branch_name)
            if success:
                logger.info(f"✓ Worktree removed on attempt {attempt}: {path}")
                return True

            if attempt < self.MAX_ATTEMPTS:
                wait_time = self.BACKOFF_BASE ** attempt
                logger.warning(
                    f"Worktree cleanup failed (attempt {attempt}/{self.MAX_ATTEMPTS}): {error}"
                )
                logger.warning(f"Retrying in {wait_time}s...")
                self._release_handles()
                self.sleep(wait_time)
            else:
                logger.warning(f"Worktree cleanup failed after {self.MAX_ATTEMPTS} attempts: {error}")
                logger.warning(f"Adding to deferred cleanup queue: {path}")
                self._add_to_deferred_queue(str(path), branch_name, error)
                return False
        return False

    def remove_tree(self, path: Path) -> bool:
        """Remove a plain directory with the same retry policy."""
        path = Path(path)
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            success, error = self._manual_remove(path)
            if success:
                return True
            if attempt < self.MAX_ATTEMPTS:
                self._release_handles()
                self.sleep(self.BACKOFF_BASE ** attempt)
        logger.warning(f"Could not remove {path}: {error}")
        self._add_to_deferred_queue(str(path), None, error)
        return False

    def _attempt_cleanup(self, path: Path, branch_name: Optional[str]) -> Tuple[bool, str]:
        if path.exists():
            result = self.git.worktree_remove(path)
            if result.returncode != 0 and path.exists():
                error = result.stderr.strip() or result.stdout.strip()
                logger.debug(f"git worktree remove failed, trying manual removal: {error}")
                success, error = self._manual_remove(path)
                if not success:
                    return False, error
        self.git.worktree_prune()

        if branch_name and self.git.branch_exists(branch_name):
            try:
                self.git.delete_branch(branch_name, force=True)
            except GitCommandError as e:
                return False, e.message
        return True, ""

    def _manual_remove(self, path: Path) -> Tuple[bool, str]:
        if not path.exists():
            return True, ""
        try:
            if platform.system() == 'Windows':
                self._make_writable(path)
            shutil.rmtree(path, onerror=self._remove_readonly)
        except OSError as e:
            return False, str(e)
        if path.exists():
            return False, f"{path} still present after removal"
        return True, ""

    def _make_writable(self, path: Path) -> None:
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                try:
                    os.chmod(os.path.join(root, name), stat.S_IRWXU)
                except OSError as e:
                    logger.debug(f"chmod failed for {name}: {e}")

    def _remove_readonly(self, func, path, excinfo) -> None:
        """Error handler for shutil.rmtree: clear read-only bit and retry once."""
        os.chmod(path, stat.S_IRWXU)
        func(path)

    def _release_handles(self) -> None:
        gc.collect()
        if platform.system() == 'Windows':
            time.sleep(0.5)

    # ------------------------------------------------------------------
    # Deferred queue
    # ------------------------------------------------------------------

    def _add_to_deferred_queue(self, path: str, branch_name: Optional[str], failure_reason: str) -> None:
        now = utc_now().isoformat()

        def _add(data: Dict[str, Any]) -> None:
            queue = data.setdefault('queue', [])
            for item in queue:
                if item.get('path') == path:
                    item['last_attempt'] = now
                    item['attempt_count'] += 1
                    item['failure_reason'] = failure_reason
                    break
            else:
                queue.append(DeferredCleanup(
                    path=path,
                    branch_name=branch_name,
                    first_failure=now,
                    last_attempt=now,
                    attempt_count=1,
                    failure_reason=failure_reason,
                ).to_dict())
            data['last_updated'] = now

        self.store.update_json(self.DEFERRED_KEY, _add)

    def _load_deferred_queue(self) -> List[DeferredCleanup]:
        data = self.store.get_json(self.DEFERRED_KEY) or {}
        return [DeferredCleanup.from_dict(item) for item in data.get('queue', [])]

    def process_deferred_queue(self) -> Tuple[int, int]:
        """Retry every queued cleanup once.

        Entries deferred while the retries run are kept.

        Returns:
            Tuple of (succeeded_count, failed_count)
        """
        queue = self._load_deferred_queue()
        if not queue:
            return 0, 0

        logger.info(f"Processing {len(queue)} deferred cleanups...")
        resolved = set()
        failures = {}
        for item in queue:
            success, error = self._attempt_cleanup(Path(item.path), item.branch_name)
            if success:
                logger.info(f"✓ Deferred cleanup succeeded: {item.path}")
                resolved.add(item.path)
            else:
                failures[item.path] = error
                logger.warning(f"Deferred cleanup still failing: {item.path}")

        now = utc_now().isoformat()

        def _merge(data: Dict[str, Any]) -> None:
            remaining = []
            for entry in data.get('queue', []):
                path = entry.get('path')
                if path in resolved:
                    continue
                if path in failures:
                    entry['last_attempt'] = now
                    entry['attempt_count'] = entry.get('attempt_count', 0) + 1
                    entry['failure_reason'] = failures[path]
                remaining.append(entry)
            data['queue'] = remaining
            data['last_updated'] = now

        self.store.update_json(self.DEFERRED_KEY, _merge)
        logger.info(f"Deferred cleanup complete: {len(resolved)} succeeded, {len(failures)} still pending")
        return len(resolved), len(failures)

    def get_queue_status(self) -> Dict[str, Any]:
        queue = self._load_deferred_queue()
        return {
            'count': len(queue),
            'items': [
                {'path': item.path, 'attempt_count': item.attempt_count, 'first_failure': item.first_failure}
                for item in queue
            ],
        }
