"""
Experiment Sandbox Manager

An experiment is a disposable copy of the pipeline:

- an isolated git worktree on branch ``experiment/<name>``
- a mirrored, empty shared-state tree the sandboxed pipeline writes to
- a baseline snapshot of the sandbox workspace
- a watcher loop that snapshots every change and logs deletions and
  modifications that exceed tolerances

Layout under ``<shared>/experiments/<name>/``::

    experiment.json                       Experiment record
    workspace/                            git worktree (removed by cleanup)
    shared/                               mirrored shared tree (removed by cleanup)
    snapshots/baseline, snapshots/cycle-<n>
    logs/monitor.log, logs/warnings.log, logs/pipeline.log
    violations/boundary-violations.log
    analysis.json

Nothing here is required by the main pipeline; cleanup always succeeds from
the caller's point of view, and leftovers go to the deferred cleanup queue.
"""

import hashlib
import json
import logging
import os
import re
import signal
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .cleanup_manager import WorkspaceCleanupManager
from .exceptions import ExperimentError, RecordNotFoundError
from .git import GitRepository
from .models import Experiment, ExperimentStatus, ExperimentVerdict, utc_now
from .snapshots import SnapshotStore
from .store import FileSystemStore
from .tasks import CancellationToken, Clock, PeriodicTask

logger = logging.getLogger(__name__)

__all__ = ["ExperimentWatcher", "ExperimentManager", "SHARED_SUBDIRS"]

SHARED_SUBDIRS = ("status", "handoffs", "blockers", "escalations", "restart_counters", "logs")
VIOLATIONS_LOG = "violations/boundary-violations.log"
MONITOR_LOG = "logs/monitor.log"
WARNINGS_LOG = "logs/warnings.log"
BASELINE = "baseline"
WATCHER_STATE = "watcher-state.json"

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ExperimentWatcher:
    """
    Watches a sandbox workspace against its baseline.

    Mirrors the boundary monitor's comparison but only writes into the
    experiment's own directory.
    """

    def __init__(self, store: FileSystemStore, snapshots: SnapshotStore,
                 deletion_tolerance: int = 10, modification_tolerance: int = 100):
        self.store = store
        self.snapshots = snapshots
        self.deletion_tolerance = deletion_tolerance
        self.modification_tolerance = modification_tolerance

    def _log(self, key: str, message: str) -> None:
        self.store.append(key, f"{utc_now().isoformat()} {message}")

    def next_cycle(self) -> int:
        """Cycle numbers continue across runs so snapshot names never repeat."""
        return int((self.store.get_json(WATCHER_STATE) or {}).get("cycle", 0)) + 1

    def check(self, cycle: Optional[int] = None) -> Dict[str, Any]:
        """One watcher cycle. Snapshots and evaluates only when something changed."""
        if cycle is None:
            cycle = self.next_cycle()
        baseline = self.snapshots.load(BASELINE)
        files = self.snapshots.current_files()
        hashes = self.snapshots.current_hashes(files)
        digest = _digest(hashes)

        state = self.store.get_json(WATCHER_STATE) or {}
        changed = digest != state.get("last_digest", _digest(baseline.file_hashes))

        current = set(files)
        deleted = sorted(set(baseline.tracked_files) - current)
        modified = sorted(
            f for f in set(baseline.tracked_files) & current
            if hashes.get(f) != baseline.file_hashes.get(f)
        )
        added = sorted(current - set(baseline.tracked_files))
        result = {
            "cycle": cycle,
            "changed": changed,
            "files": len(files),
            "deleted": len(deleted),
            "modified": len(modified),
            "added": len(added),
        }
        self._log(
            MONITOR_LOG,
            f"cycle {cycle}: files={len(files)} deleted={len(deleted)} "
            f"modified={len(modified)} added={len(added)}" + (" (changed)" if changed else ""),
        )

        if changed:
            if len(deleted) > self.deletion_tolerance:
                self._log(
                    VIOLATIONS_LOG,
                    f"cycle {cycle}: {len(deleted)} deletions exceed tolerance "
                    f"{self.deletion_tolerance}: {', '.join(deleted[:20])}",
                )
                logger.error(
                    f"✗ Experiment cycle {cycle}: {len(deleted)} deletions (tolerance {self.deletion_tolerance})"
                )
            if len(modified) + len(added) > self.modification_tolerance:
                self._log(
                    WARNINGS_LOG,
                    f"cycle {cycle}: {len(modified) + len(added)} modifications exceed tolerance "
                    f"{self.modification_tolerance}",
                )
                logger.warning(f"⚠ Experiment cycle {cycle}: high modification count")

        self.store.put_json(WATCHER_STATE, {
            "last_digest": digest,
            "cycle": max(cycle, int(state.get("cycle", 0))),
            "updated": utc_now().isoformat(),
        })
        if changed:
            self.snapshots.capture(f"cycle-{cycle}")
        return result


def _digest(hashes: Dict[str, str]) -> str:
    return hashlib.sha256(json.dumps(hashes, sort_keys=True).encode("utf-8")).hexdigest()


class ExperimentManager:
    """
    setup / start / stop / analyze / cleanup for experiment sandboxes.

    Args:
        root: Directory holding all experiments (``<shared>/experiments``)
        git: The main repository
        deletion_tolerance: Deletions allowed before a violation is logged
        modification_tolerance: Changed files allowed before a warning is logged
        pipeline_command: Command ``start`` launches inside the sandbox
        cleanup: Cleanup manager (built from ``git`` when omitted)
    """

    def __init__(
        self,
        root: Path,
        git: GitRepository,
        deletion_tolerance: int = 10,
        modification_tolerance: int = 100,
        pipeline_command: Optional[str] = None,
        manifest_files: Sequence[str] = (),
        cleanup: Optional[WorkspaceCleanupManager] = None,
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.git = git
        self.deletion_tolerance = deletion_tolerance
        self.modification_tolerance = modification_tolerance
        self.pipeline_command = pipeline_command
        self.manifest_files = list(manifest_files)
        self.cleanup_manager = cleanup or WorkspaceCleanupManager(git, FileSystemStore(self.root))
        self._processes: Dict[str, subprocess.Popen] = {}

    # ------------------------------------------------------------------
    # Paths and records
    # ------------------------------------------------------------------

    def _validate_name(self, name: str) -> None:
        if not _NAME.match(name or ""):
            raise ExperimentError(f"Invalid experiment name: {name!r}")

    def experiment_dir(self, name: str) -> Path:
        self._validate_name(name)
        return self.root / name

    def workspace_path(self, name: str) -> Path:
        return self.experiment_dir(name) / "workspace"

    def shared_path(self, name: str) -> Path:
        return self.experiment_dir(name) / "shared"

    def store_for(self, name: str) -> FileSystemStore:
        return FileSystemStore(self.experiment_dir(name))

    def snapshots_for(self, name: str) -> SnapshotStore:
        workspace = self.workspace_path(name)
        return SnapshotStore(self.store_for(name), workspace, GitRepository(workspace),
                             manifest_files=self.manifest_files)

    def watcher_for(self, name: str) -> ExperimentWatcher:
        return ExperimentWatcher(
            self.store_for(name),
            self.snapshots_for(name),
            deletion_tolerance=self.deletion_tolerance,
            modification_tolerance=self.modification_tolerance,
        )

    def load(self, name: str) -> Experiment:
        """
        Raises:
            RecordNotFoundError: If the experiment was never set up.
        """
        data = self.store_for(name).get_json("experiment.json") if self.experiment_dir(name).exists() else None
        if data is None:
            raise RecordNotFoundError(
                f"Experiment {name} not found", record_type="experiment", record_id=name
            )
        return Experiment.from_dict(data)

    def _save(self, experiment: Experiment) -> None:
        self.store_for(experiment.name).put_json("experiment.json", experiment.to_dict())

    def list_experiments(self) -> List[Experiment]:
        experiments = []
        for path in sorted(self.root.iterdir()):
            if path.is_dir() and (path / "experiment.json").exists():
                experiments.append(self.load(path.name))
        return experiments

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self, name: str, target: str) -> Experiment:
        """
        Create the worktree, mirrored shared tree and baseline snapshot.

        Raises:
            ExperimentError: If the name is in use or the repository has no commit.
        """
        self._validate_name(name)
        try:
            existing = self.load(name)
        except RecordNotFoundError:
            existing = None
        if existing is not None and existing.status is not ExperimentStatus.CLEANED:
            raise ExperimentError(f"Experiment {name} already exists ({existing.status.value})")

        base_commit = self.git.head()
        if base_commit is None:
            raise ExperimentError("Cannot create an experiment in a repository without commits")
        branch = f"experiment/{name}"
        if self.git.branch_exists(branch):
            raise ExperimentError(f"Branch {branch} already exists")

        workspace = self.workspace_path(name)
        workspace.parent.mkdir(parents=True, exist_ok=True)
        self.git.worktree_add(workspace, branch, base_commit)

        shared = self.shared_path(name)
        for sub in SHARED_SUBDIRS:
            (shared / sub).mkdir(parents=True, exist_ok=True)

        store = self.store_for(name)
        if store.exists(f"snapshots/{BASELINE}/snapshot.json"):
            # Left over from a cleaned run under the same name
            for key in store.list("snapshots"):
                store.delete(key)
        for key in (VIOLATIONS_LOG, WARNINGS_LOG, WATCHER_STATE, "analysis.json"):
            store.delete(key)
        self.snapshots_for(name).capture(BASELINE)

        experiment = Experiment(
            name=name,
            branch=branch,
            base_branch=self.git.current_branch() or "HEAD",
            base_commit=base_commit,
            target=target,
            baseline_snapshot=BASELINE,
        )
        self._save(experiment)
        store.append(MONITOR_LOG, f"{utc_now().isoformat()} setup {name} for {target} at {base_commit[:12]}")
        logger.info(f"✓ Experiment {name} set up on {branch} ({workspace})")
        return experiment

    def check(self, name: str, cycle: Optional[int] = None) -> Dict[str, Any]:
        """Run a single watcher cycle."""
        self.load(name)
        return self.watcher_for(name).check(cycle)

    def _launch(self, experiment: Experiment, command: str) -> subprocess.Popen:
        env = dict(os.environ)
        env["SAFEGUARDS_SHARED_DIR"] = str(self.shared_path(experiment.name))
        env["SAFEGUARDS_WORKSPACE"] = str(self.workspace_path(experiment.name))
        env["SAFEGUARDS_EXPERIMENT"] = experiment.name
        env["SAFEGUARDS_EXPERIMENT_TARGET"] = experiment.target
        log_path = self.experiment_dir(experiment.name) / "logs" / "pipeline.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log_file:
            return subprocess.Popen(
                command,
                shell=True,
                cwd=str(self.workspace_path(experiment.name)),
                env=env,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    def start(self, name: str, interval: float = 60.0, clock: Optional[Clock] = None,
              token: Optional[CancellationToken] = None, max_cycles: Optional[int] = None) -> Experiment:
        """
        Launch the sandboxed pipeline (if configured) and watch until stopped.

        Raises:
            ExperimentError: If the experiment is not in a startable state.
        """
        experiment = self.load(name)
        if experiment.status not in (ExperimentStatus.CREATED, ExperimentStatus.STOPPED):
            raise ExperimentError(f"Experiment {name} cannot start from {experiment.status.value}")

        process = None
        if self.pipeline_command:
            process = self._launch(experiment, self.pipeline_command)
            self._processes[name] = process
            experiment.pid = process.pid
            logger.info(f"✓ Experiment {name} pipeline started (pid {process.pid})")
        else:
            logger.warning("⚠ No pipeline command configured; watching the sandbox only")
        experiment.status = ExperimentStatus.RUNNING
        self._save(experiment)

        token = token or CancellationToken()
        watcher = self.watcher_for(name)

        def action(cycle: int) -> None:
            watcher.check(watcher.next_cycle())
            if process is not None and process.poll() is not None:
                token.cancel(f"pipeline exited with {process.returncode}")

        PeriodicTask(
            name=f"experiment-watcher[{name}]",
            interval=interval,
            action=action,
            clock=clock,
            token=token,
        ).run(max_cycles=max_cycles)

        if self.load(name).status is ExperimentStatus.RUNNING:
            return self.stop(name)
        return self.load(name)

    def stop(self, name: str) -> Experiment:
        """Terminate the sandboxed pipeline; the sandbox itself stays."""
        experiment = self.load(name)
        process = self._processes.pop(name, None)
        if process is not None:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=30)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
        elif experiment.pid:
            try:
                os.killpg(experiment.pid, signal.SIGTERM)
            except ProcessLookupError:
                logger.debug(f"Experiment {name} pipeline (pid {experiment.pid}) already exited")
        if experiment.status is ExperimentStatus.RUNNING:
            experiment.status = ExperimentStatus.STOPPED
        experiment.pid = None
        self._save(experiment)
        self.store_for(name).append(MONITOR_LOG, f"{utc_now().isoformat()} stopped")
        logger.info(f"✓ Experiment {name} stopped")
        return experiment

    def analyze(self, name: str) -> Dict[str, Any]:
        """Verdict from the violation log: any entry means failed."""
        experiment = self.load(name)
        store = self.store_for(name)
        violations = store.read_lines(VIOLATIONS_LOG)
        warnings = store.read_lines(WARNINGS_LOG)
        verdict = ExperimentVerdict.FAILED if violations else ExperimentVerdict.SUCCEEDED

        report = {
            "experiment": name,
            "target": experiment.target,
            "branch": experiment.branch,
            "verdict": verdict.value,
            "description": verdict.description,
            "violations": violations,
            "warnings": warnings,
            "snapshots": self.snapshots_for(name).list_names(),
            "timestamp": utc_now().isoformat(),
        }
        store.put_json("analysis.json", report)

        experiment.verdict = verdict
        if experiment.status is not ExperimentStatus.CLEANED:
            experiment.status = ExperimentStatus.ANALYZED
        self._save(experiment)
        if verdict is ExperimentVerdict.FAILED:
            logger.error(f"✗ Experiment {name}: {verdict.description} ({len(violations)} violation(s))")
        else:
            logger.info(f"✓ Experiment {name}: {verdict.description}")
        return report

    def cleanup(self, name: str) -> Experiment:
        """Discard the worktree, branch and mirrored tree; keep record and logs."""
        experiment = self.load(name)
        if experiment.status is ExperimentStatus.RUNNING or experiment.pid:
            experiment = self.stop(name)

        self.cleanup_manager.process_deferred_queue()
        self.cleanup_manager.cleanup_worktree(self.workspace_path(name), experiment.branch)
        self.cleanup_manager.remove_tree(self.shared_path(name))

        experiment.status = ExperimentStatus.CLEANED
        self._save(experiment)
        self.store_for(name).append(MONITOR_LOG, f"{utc_now().isoformat()} cleaned up")
        logger.info(f"✓ Experiment {name} cleaned up")
        return experiment
