"""Thin wrapper over the git command line.

All git access goes through GitRepository so the rollback engine, monitors and
experiment manager share one place that applies timeouts and turns non-zero
exits into GitCommandError.
"""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .exceptions import GitCommandError

logger = logging.getLogger(__name__)

__all__ = ["GitRepository"]


class GitRepository:
    """Git operations against one working tree."""

    def __init__(self, path: Path, timeout: float = 60):
        self.path = Path(path).resolve()
        self.timeout = timeout

    def run(self, *args: str, check: bool = True, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        """
        Run ``git <args>`` in the working tree.

        Raises:
            GitCommandError: On non-zero exit (when ``check``) or timeout.
        """
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.path),
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitCommandError(
                f"git {' '.join(args)} timed out after {timeout or self.timeout}s",
                command=cmd,
            )
        except FileNotFoundError:
            raise GitCommandError("git executable not found", command=cmd)

        if check and result.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} failed: {result.stderr.strip() or result.stdout.strip()}",
                command=cmd,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def _lines(self, *args: str) -> List[str]:
        return [line for line in self.run(*args).stdout.splitlines() if line.strip()]

    # Queries

    def is_repository(self) -> bool:
        return self.run("rev-parse", "--is-inside-work-tree", check=False).returncode == 0

    def rev_parse(self, ref: str) -> Optional[str]:
        """Resolve ``ref`` to a commit sha, or None when it does not exist."""
        result = self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def commit_exists(self, ref: str) -> bool:
        return self.rev_parse(ref) is not None

    def head(self) -> Optional[str]:
        return self.rev_parse("HEAD")

    def current_branch(self) -> Optional[str]:
        result = self.run("rev-parse", "--abbrev-ref", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def status_porcelain(self) -> List[str]:
        return [line for line in self.run("status", "--porcelain").stdout.splitlines() if line]

    def is_clean(self) -> bool:
        return not self.status_porcelain()

    def tracked_files(self) -> List[str]:
        return self._lines("ls-files")

    def untracked_files(self) -> List[str]:
        return self._lines("ls-files", "--others", "--exclude-standard")

    def log_oneline(self, count: int = 10) -> List[str]:
        if self.head() is None:
            return []
        return self._lines("log", "--oneline", f"-{count}")

    def log_entries(self, count: Optional[int] = None) -> List[Tuple[str, str]]:
        """Return ``(sha, subject)`` pairs, newest first."""
        if self.head() is None:
            return []
        args = ["log", "--format=%H%x09%s"]
        if count:
            args.append(f"-{count}")
        entries = []
        for line in self._lines(*args):
            sha, _, subject = line.partition("\t")
            entries.append((sha, subject))
        return entries

    def last_commit_message(self) -> str:
        if self.head() is None:
            return ""
        return self.run("log", "-1", "--format=%B").stdout.strip()

    def commits_ahead(self, base_ref: str) -> Optional[int]:
        """Commits on HEAD not reachable from ``base_ref``; None if the base is unknown."""
        if not self.commit_exists(base_ref) or self.head() is None:
            return None
        return int(self.run("rev-list", "--count", "HEAD", f"^{base_ref}").stdout.strip() or 0)

    def diff_name_status(self, ref: str = "HEAD~1") -> List[Tuple[str, str]]:
        """``(status letter, path)`` for changes between ``ref`` and the working tree."""
        if not self.commit_exists(ref):
            return []
        changes = []
        for line in self._lines("diff", "--name-status", ref):
            parts = line.split("\t")
            status = parts[0][:1]
            changes.append((status, parts[-1]))
        return changes

    def diff_names(self, ref: str = "HEAD~1") -> List[str]:
        return [path for _, path in self.diff_name_status(ref)]

    def diff_text(self, ref: str, paths: Sequence[str]) -> str:
        if not self.commit_exists(ref):
            return ""
        return self.run("diff", ref, "--", *paths).stdout

    def list_tags(self, pattern: str = "*") -> List[str]:
        return self._lines("tag", "--list", pattern)

    def path_exists_at(self, ref: str, path: str) -> bool:
        return self.run("cat-file", "-e", f"{ref}:{path}", check=False).returncode == 0

    def stash_create(self) -> Optional[str]:
        """Commit object for uncommitted tracked changes without touching the tree.

        Returns None when there is nothing to stash.
        """
        if self.head() is None:
            return None
        sha = self.run("stash", "create").stdout.strip()
        return sha or None

    # Mutations

    def tag(self, name: str, message: str, ref: str = "HEAD") -> None:
        self.run("tag", "-a", name, ref, "-m", message)

    def reset_hard(self, ref: str) -> None:
        self.run("reset", "--hard", ref)

    def clean_untracked(self, exclude: Sequence[str] = ()) -> List[str]:
        """Remove untracked files and directories; returns the removed paths."""
        args = ["clean", "-fd"]
        for pattern in exclude:
            args.extend(["-e", pattern])
        removed = []
        for line in self._lines(*args):
            if line.startswith("Removing "):
                removed.append(line[len("Removing "):])
        return removed

    def checkout_files(self, ref: str, files: Sequence[str]) -> None:
        self.run("checkout", ref, "--", *files)

    def remove_files(self, files: Sequence[str]) -> None:
        self.run("rm", "-f", "-q", "--ignore-unmatch", "--", *files)

    def stash_apply(self, sha: str) -> None:
        self.run("stash", "apply", sha)

    def checkout(self, branch: str, create: bool = False) -> None:
        if create:
            self.run("checkout", "-b", branch)
        else:
            self.run("checkout", branch)

    def delete_branch(self, name: str, force: bool = True) -> None:
        self.run("branch", "-D" if force else "-d", name)

    def worktree_add(self, path: Path, branch: str, ref: str = "HEAD") -> None:
        self.run("worktree", "add", "-b", branch, str(path), ref)

    def worktree_remove(self, path: Path) -> subprocess.CompletedProcess:
        return self.run("worktree", "remove", "--force", str(path), check=False)

    def worktree_prune(self) -> None:
        self.run("worktree", "prune", check=False)

    def branch_exists(self, name: str) -> bool:
        return self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False).returncode == 0

    def commit(self, paths: Sequence[str], message: str) -> str:
        self.run("add", "--", *paths)
        self.run("commit", "-m", message)
        return self.head() or ""
