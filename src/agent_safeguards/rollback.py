"""
Rollback & Recovery Engine

Four escalating strategies:

    git        reset to a named commit
    snapshot   restore manifests from a named snapshot, reset to its commit
    files      restore an explicit file list to its state one revision prior
    emergency  reset to the last commit outside integration/cycle vocabulary,
               then remove untracked artifacts

Every invocation follows the same sequence:

1. Back up: a recovery tag on HEAD, a commit object for uncommitted changes,
   and copies of the affected files under ``backups/<label>-<ts>/``
2. Append one RollbackRecord (outcome pending) to ``rollback/records.jsonl``
3. Apply the destructive step inside a CriticalSection
4. Store the outcome in ``rollback/outcomes/<id>.json``

If step 3 fails the engine resets to the recovery tag, restores the copies
and raises RecoveryError; the tree is never left half rolled back.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .exceptions import RecordNotFoundError, RecoveryError, SafeguardError
from .git import GitRepository
from .models import RollbackLevel, RollbackOutcome, RollbackRecord, utc_now
from .rules import matches_any
from .snapshots import SnapshotStore, is_excluded, list_workspace_files
from .store import KeyValueStore
from .tasks import CriticalSection
from .verification import RecoveryVerifier, VerificationResult

logger = logging.getLogger(__name__)

__all__ = [
    "RECOVERY_TAG_PREFIX",
    "UNSAFE_COMMIT_PATTERN",
    "RollbackPlan",
    "RollbackEngine",
]

RECOVERY_TAG_PREFIX = "recovery-before-rollback-"
WIP_TAG_PREFIX = "recovery-wip-"
RECORDS_KEY = "rollback/records.jsonl"
OUTCOMES_PREFIX = "rollback/outcomes"
BACKUPS_PREFIX = "backups"

# Commits produced by integration runs or agent cycles are not trusted as
# "last known good"
UNSAFE_COMMIT_PATTERN = re.compile(r"integrat|cycle", re.IGNORECASE)


def _stamp() -> str:
    return utc_now().strftime("%Y%m%d-%H%M%S-%f")


@dataclass
class RollbackPlan:
    """Strategy chosen by the smart selector, with the metrics behind it."""

    level: RollbackLevel
    target: Optional[str] = None
    files: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    rationale: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "target": self.target,
            "files": list(self.files),
            "metrics": dict(self.metrics),
            "rationale": self.rationale,
        }


class RollbackEngine:
    """
    Undo agent work and restore a known-good state.

    Args:
        store: Shared store for backups and rollback records
        git: Repository being rolled back
        snapshots: Snapshot store (baseline and named snapshots)
        verifier: Runs build/test validation after a rollback
        baseline_ref: Ref that "commits ahead" is measured against
        baseline_snapshot: Snapshot name the smart selector looks for
        manifest_files: Manifests copied into every backup
        exclude: Workspace-relative paths never copied or cleaned
            (the shared directory when it lives inside the workspace)
        max_commits_ahead: Smart selector's small-footprint commit limit
        max_modified_files: Smart selector's small-footprint file limit
    """

    def __init__(
        self,
        store: KeyValueStore,
        git: GitRepository,
        snapshots: SnapshotStore,
        verifier: Optional[RecoveryVerifier] = None,
        baseline_ref: str = "origin/main",
        baseline_snapshot: str = "baseline",
        manifest_files: Sequence[str] = (),
        exclude: Sequence[str] = (),
        max_commits_ahead: int = 1,
        max_modified_files: int = 10,
    ):
        self.store = store
        self.git = git
        self.workspace = git.path
        self.snapshots = snapshots
        self.verifier = verifier or RecoveryVerifier(git.path, store=store)
        self.baseline_ref = baseline_ref
        self.baseline_snapshot = baseline_snapshot
        self.manifest_files = list(manifest_files)
        self.exclude = list(exclude)
        self.max_commits_ahead = max_commits_ahead
        self.max_modified_files = max_modified_files

    # ==========================================================================
    # Backup and record keeping
    # ==========================================================================

    def _copy_into(self, prefix: str, files: Sequence[str]) -> List[str]:
        copied = []
        for rel in files:
            source = self.workspace / rel
            if source.is_file():
                self.store.put(f"{prefix}/files/{rel}", source.read_bytes())
                copied.append(rel)
        return copied

    def _backup(self, label: str, files: Sequence[str] = (), full_workspace: bool = False) -> Dict[str, Any]:
        """Take every backup needed to reverse the coming rollback.

        Raises:
            RecoveryError: If the backup cannot be taken; nothing was changed.
        """
        stamp = _stamp()
        prefix = f"{BACKUPS_PREFIX}/{label}-{stamp}"
        try:
            head = self.git.head()
            recovery_tag = None
            if head is not None:
                recovery_tag = f"{RECOVERY_TAG_PREFIX}{stamp}"
                self.git.tag(recovery_tag, f"State before {label} rollback", head)

            wip_tag = None
            wip = self.git.stash_create()
            if wip is not None:
                wip_tag = f"{WIP_TAG_PREFIX}{stamp}"
                self.git.tag(wip_tag, f"Uncommitted changes before {label} rollback", wip)

            self.store.put_text(f"{prefix}/git-status.txt", "\n".join(self.git.status_porcelain()) + "\n")
            self.store.put_text(f"{prefix}/recent-commits.txt", "\n".join(self.git.log_oneline(10)) + "\n")

            manifests = [m for m in self.manifest_files if (self.workspace / m).is_file()]
            for manifest in manifests:
                self.store.put(f"{prefix}/manifests/{manifest}", (self.workspace / manifest).read_bytes())

            to_copy = list(files)
            if full_workspace:
                to_copy = list_workspace_files(self.workspace, self.git, self.exclude)
            copied = self._copy_into(prefix, to_copy)
        except (SafeguardError, OSError) as e:
            raise RecoveryError(f"Backup failed, nothing was changed: {e}", level=label)

        info = {
            "ref": prefix,
            "head": head,
            "recovery_tag": recovery_tag,
            "wip_tag": wip_tag,
            "manifests": manifests,
            "files": copied,
            "requested_files": list(files),
            "timestamp": utc_now().isoformat(),
        }
        self.store.put_json(f"{prefix}/backup.json", info)
        logger.info(f"✓ Backup {prefix} (tag {recovery_tag}, {len(copied)} file copies)")
        return info

    def _compensate(self, backup: Dict[str, Any]) -> None:
        """Return the tree to the backed-up state."""
        if backup.get("recovery_tag"):
            self.git.reset_hard(backup["recovery_tag"])
        if backup.get("wip_tag"):
            self.git.stash_apply(backup["wip_tag"])
        for rel in backup.get("files", []):
            data = self.store.get(f"{backup['ref']}/files/{rel}")
            if data is None:
                continue
            target = self.workspace / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        logger.warning(f"⚠ Compensating reset applied from {backup['ref']}")

    def _finish(self, record: RollbackRecord, outcome: RollbackOutcome, detail: str) -> None:
        record.outcome = outcome
        record.detail = detail
        self.store.put_json(f"{OUTCOMES_PREFIX}/{record.record_id}.json", {
            "outcome": outcome.value,
            "detail": detail,
            "timestamp": utc_now().isoformat(),
        })

    def _execute(
        self,
        level: RollbackLevel,
        target: str,
        reason: str,
        action: Callable[[], str],
        files: Sequence[str] = (),
        full_workspace: bool = False,
    ) -> RollbackRecord:
        with CriticalSection(f"{level.value} rollback"):
            backup = self._backup(level.value, files, full_workspace)
            record = RollbackRecord(
                record_id=f"{_stamp()}-{uuid.uuid4().hex[:6]}",
                level=level,
                target=target,
                reason=reason,
                backup_ref=backup["ref"],
            )
            self.store.append(RECORDS_KEY, json.dumps(record.to_dict(), sort_keys=True))

            try:
                detail = action()
            except (SafeguardError, OSError) as e:
                logger.error(f"✗ {level.value} rollback failed: {e}")
                try:
                    self._compensate(backup)
                except (SafeguardError, OSError) as comp_error:
                    logger.critical(
                        f"✗ Compensation failed, restore manually from {backup['ref']} "
                        f"(tag {backup.get('recovery_tag')}): {comp_error}"
                    )
                    self._finish(record, RollbackOutcome.FAILED, f"{e}; compensation failed: {comp_error}")
                    raise RecoveryError(
                        f"{level.value} rollback failed and could not be undone: {e}",
                        level=level.value,
                        backup_ref=backup["ref"],
                    )
                self._finish(record, RollbackOutcome.FAILED, f"{e}; compensated")
                raise RecoveryError(
                    f"{level.value} rollback failed, previous state restored: {e}",
                    level=level.value,
                    backup_ref=backup["ref"],
                )

            self._finish(record, RollbackOutcome.SUCCEEDED, detail)

        logger.info(f"✓ {level.value} rollback complete: {detail}")
        return record

    # ==========================================================================
    # Strategies
    # ==========================================================================

    def rollback_git(self, target: str, reason: str = "") -> RollbackRecord:
        """
        Reset to ``target`` after tagging the current HEAD.

        Raises:
            RecoveryError: If the target commit does not exist (nothing changed).
        """
        sha = self.git.rev_parse(target)
        if sha is None:
            raise RecoveryError(f"Target commit {target} does not exist", level=RollbackLevel.GIT.value)

        def action() -> str:
            self.git.reset_hard(sha)
            return f"reset to {sha[:12]}"

        return self._execute(RollbackLevel.GIT, sha, reason, action)

    def rollback_snapshot(self, name: Optional[str] = None, reason: str = "") -> RollbackRecord:
        """
        Reset to the snapshot's commit, then restore its manifest copies.

        Raises:
            RecoveryError: If the snapshot or its commit does not exist.
        """
        name = name or self.baseline_snapshot
        try:
            snapshot = self.snapshots.load(name)
        except RecordNotFoundError as e:
            raise RecoveryError(str(e), level=RollbackLevel.SNAPSHOT.value)
        if not snapshot.commit or not self.git.commit_exists(snapshot.commit):
            raise RecoveryError(
                f"Snapshot {name} has no reachable commit ({snapshot.commit})",
                level=RollbackLevel.SNAPSHOT.value,
            )

        def action() -> str:
            self.git.reset_hard(snapshot.commit)
            restored = []
            for manifest in snapshot.manifests:
                content = self.snapshots.manifest_content(name, manifest)
                if content is None:
                    continue
                target = self.workspace / manifest
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
                restored.append(manifest)
            return f"reset to snapshot {name} ({snapshot.commit[:12]}), restored {len(restored)} manifest(s)"

        return self._execute(RollbackLevel.SNAPSHOT, name, reason, action,
                             files=snapshot.manifests)

    def rollback_files(self, files: Sequence[str], reason: str = "", ref: str = "HEAD~1") -> RollbackRecord:
        """
        Restore ``files`` to their content at ``ref``.

        A file that did not exist at ``ref`` is removed, which is its state
        one revision prior.

        Raises:
            RecoveryError: If no files were given or ``ref`` does not exist.
        """
        files = sorted({f.strip() for f in files if f and f.strip()})
        if not files:
            raise RecoveryError("No files given for selective rollback", level=RollbackLevel.FILES.value)
        sha = self.git.rev_parse(ref)
        if sha is None:
            raise RecoveryError(f"Revision {ref} does not exist", level=RollbackLevel.FILES.value)

        def action() -> str:
            present = [f for f in files if self.git.path_exists_at(sha, f)]
            absent = [f for f in files if f not in present]
            if present:
                self.git.checkout_files(sha, present)
            if absent:
                self.git.remove_files(absent)
                for rel in absent:
                    path = self.workspace / rel
                    if path.is_file():
                        path.unlink()
            return f"restored {len(present)} file(s), removed {len(absent)} from {sha[:12]}"

        return self._execute(RollbackLevel.FILES, f"{sha}:{','.join(files)}", reason, action, files=files)

    def last_known_good(self) -> Optional[Tuple[str, str]]:
        """Newest ``(sha, subject)`` whose subject avoids integration/cycle vocabulary."""
        for sha, subject in self.git.log_entries():
            if not UNSAFE_COMMIT_PATTERN.search(subject):
                return sha, subject
        return None

    def rollback_emergency(self, reason: str = "") -> RollbackRecord:
        """
        Reset to the last known good commit and remove untracked artifacts.

        Raises:
            RecoveryError: If every commit matches the unsafe vocabulary.
                The engine does not guess.
        """
        candidate = self.last_known_good()
        if candidate is None:
            raise RecoveryError(
                "No commit outside integration/cycle vocabulary; refusing to guess a last known good state",
                level=RollbackLevel.EMERGENCY.value,
            )
        sha, subject = candidate
        logger.warning(f"⚠ Emergency rollback to {sha[:12]} ({subject})")

        def action() -> str:
            self.git.reset_hard(sha)
            removed = self.git.clean_untracked(exclude=self.exclude)
            return f"reset to {sha[:12]}, removed {len(removed)} untracked path(s)"

        return self._execute(RollbackLevel.EMERGENCY, sha, reason, action, full_workspace=True)

    # ==========================================================================
    # Smart selection
    # ==========================================================================

    def _modified_paths(self) -> List[str]:
        paths = []
        for line in self.git.status_porcelain():
            path = line[3:].split(" -> ")[-1].strip('"')
            if not is_excluded(path.rstrip("/"), self.exclude):
                paths.append(path)
        return paths

    def select_strategy(self, scope: Sequence[str] = ()) -> RollbackPlan:
        """
        Choose a strategy from situational metrics without changing anything.

        small footprint -> git, baseline snapshot -> snapshot,
        agent-scoped changes only -> files, otherwise -> emergency.
        """
        ahead = self.git.commits_ahead(self.baseline_ref)
        modified = self._modified_paths()
        changed = self.git.diff_names("HEAD~1")
        scoped = [f for f in changed if matches_any(f, scope)] if scope else []
        previous = self.git.rev_parse("HEAD~1")
        metrics = {
            "commits_ahead": ahead,
            "modified_files": len(modified),
            "scoped_files": len(scoped),
            "changed_files": len(changed),
            "baseline_snapshot": self.snapshots.exists(self.baseline_snapshot),
        }

        if (
            ahead is not None
            and ahead <= self.max_commits_ahead
            and len(modified) <= self.max_modified_files
            and previous is not None
        ):
            return RollbackPlan(RollbackLevel.GIT, target=previous, metrics=metrics,
                                rationale="small footprint")
        if metrics["baseline_snapshot"]:
            return RollbackPlan(RollbackLevel.SNAPSHOT, target=self.baseline_snapshot,
                                metrics=metrics, rationale="baseline snapshot available")
        if scoped and len(scoped) == len(changed):
            return RollbackPlan(RollbackLevel.FILES, files=scoped, metrics=metrics,
                                rationale="changes confined to agent scope")
        return RollbackPlan(RollbackLevel.EMERGENCY, metrics=metrics,
                            rationale="no narrower strategy applies")

    def smart(self, reason: str = "", scope: Sequence[str] = ()) -> Tuple[RollbackPlan, RollbackRecord]:
        """Execute exactly the plan ``select_strategy`` returns; no fall-through."""
        plan = self.select_strategy(scope)
        logger.info(f"Smart rollback selected {plan.level.value}: {plan.rationale} {plan.metrics}")
        if plan.level is RollbackLevel.GIT:
            record = self.rollback_git(plan.target, reason)
        elif plan.level is RollbackLevel.SNAPSHOT:
            record = self.rollback_snapshot(plan.target, reason)
        elif plan.level is RollbackLevel.FILES:
            record = self.rollback_files(plan.files, reason)
        else:
            record = self.rollback_emergency(reason)
        return plan, record

    # ==========================================================================
    # Verification and listing
    # ==========================================================================

    def verify(self) -> VerificationResult:
        return self.verifier.verify()

    def records(self) -> List[RollbackRecord]:
        """All rollback records, oldest first, with their stored outcomes."""
        records = []
        for entry in self.store.read_jsonl(RECORDS_KEY):
            record = RollbackRecord.from_dict(entry)
            outcome = self.store.get_json(f"{OUTCOMES_PREFIX}/{record.record_id}.json")
            if outcome:
                record.outcome = RollbackOutcome(outcome["outcome"])
                record.detail = outcome.get("detail", "")
            records.append(record)
        return records

    def backups(self) -> List[str]:
        names = {key.split("/")[1] for key in self.store.list(BACKUPS_PREFIX) if key.count("/") >= 2}
        return sorted(names)

    def list(self, limit: int = 10) -> Dict[str, Any]:
        """Recovery points available right now."""
        return {
            "recent_commits": self.git.log_oneline(limit),
            "snapshots": self.snapshots.list_names(),
            "backups": self.backups(),
            "recovery_tags": self.git.list_tags(f"{RECOVERY_TAG_PREFIX}*"),
            "records": [r.to_dict() for r in self.records()[-limit:]],
        }
