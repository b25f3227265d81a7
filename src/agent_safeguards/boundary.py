"""
Boundary Violation Monitor

Compares the workspace against a baseline snapshot taken before any agent
activity and flags:

- out_of_scope_modification  a file that existed at baseline now has different content
- excessive_deletion         more baseline files gone than the tolerance allows
- incomplete_workspace       observed file count below ratio * expected count
- out_of_scope_addition      a new file outside the agent's declared scope

Violations go to ``boundary/violations.jsonl`` and ``boundary/alerts/``. When
auto-pause is on, the agent's process is paused with SIGSTOP (never killed);
a snapshot is captured first so the suspension has a backup reference.

The baseline must be captured before the agent writes anything; every later
comparison is only as good as that capture.
"""

import fnmatch
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .alerts import AlertWriter
from .coordination import StatusCoordinator
from .exceptions import RecordNotFoundError, SafeguardError, SnapshotExistsError
from .models import Severity, Snapshot, utc_now
from .snapshots import SnapshotStore
from .store import KeyValueStore
from .tasks import CancellationToken, Clock, PeriodicTask

logger = logging.getLogger(__name__)

__all__ = [
    "BoundaryViolation",
    "BoundaryReport",
    "ProcessController",
    "BoundaryMonitor",
]

PREFIX = "boundary"


@dataclass
class BoundaryViolation:
    kind: str
    severity: Severity
    files: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def signature(self) -> str:
        return f"{self.kind}:{','.join(sorted(self.files))}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity.value,
            "files": list(self.files),
            "details": dict(self.details),
        }


@dataclass
class BoundaryReport:
    """Result of one boundary check."""

    cycle: int
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    observed_count: int = 0
    expected_count: int = 0
    violations: List[BoundaryViolation] = field(default_factory=list)
    new_violations: List[BoundaryViolation] = field(default_factory=list)
    suspended: bool = False

    @property
    def clean(self) -> bool:
        return not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "modified": self.modified,
            "deleted": self.deleted,
            "added": self.added,
            "observed_count": self.observed_count,
            "expected_count": self.expected_count,
            "violations": [v.to_dict() for v in self.violations],
            "new_violations": [v.to_dict() for v in self.new_violations],
            "suspended": self.suspended,
        }


class ProcessController:
    """Pause and resume agent processes with job-control signals."""

    def pause(self, pid: int) -> None:
        if sys.platform == "win32":
            raise SafeguardError("Process suspension is not supported on Windows")
        os.kill(pid, signal.SIGSTOP)
        logger.warning(f"⚠ Process {pid} paused (SIGSTOP)")

    def resume(self, pid: int) -> None:
        if sys.platform == "win32":
            raise SafeguardError("Process suspension is not supported on Windows")
        os.kill(pid, signal.SIGCONT)
        logger.info(f"✓ Process {pid} resumed (SIGCONT)")

    def is_alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True


class BoundaryMonitor:
    """Detects out-of-scope changes relative to a baseline snapshot."""

    def __init__(
        self,
        store: KeyValueStore,
        snapshots: SnapshotStore,
        coordinator: Optional[StatusCoordinator] = None,
        agent: Optional[str] = None,
        scope: Sequence[str] = (),
        allowed_modifications: Sequence[str] = (),
        deletion_tolerance: int = 5,
        completeness_ratio: float = 0.8,
        expected_file_count: int = 0,
        auto_pause: bool = False,
        baseline_name: str = "baseline",
        controller: Optional[ProcessController] = None,
        prefix: str = PREFIX,
    ):
        self.store = store
        self.snapshots = snapshots
        self.coordinator = coordinator
        self.agent = agent
        self.scope = tuple(scope)
        self.allowed_modifications = tuple(allowed_modifications)
        self.deletion_tolerance = deletion_tolerance
        self.completeness_ratio = completeness_ratio
        self.expected_file_count = expected_file_count
        self.auto_pause = auto_pause
        self.baseline_name = baseline_name
        self.controller = controller or ProcessController()
        self.prefix = prefix
        self.alerts = AlertWriter(store, prefix)

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    def capture_baseline(self) -> Snapshot:
        """
        Capture the baseline. Call before any agent activity.

        Raises:
            SnapshotExistsError: If a baseline already exists.
        """
        snapshot = self.snapshots.capture(self.baseline_name)
        logger.info(f"✓ Baseline {self.baseline_name}: {len(snapshot.tracked_files)} files")
        return snapshot

    def ensure_baseline(self) -> Snapshot:
        try:
            return self.snapshots.load(self.baseline_name)
        except RecordNotFoundError:
            try:
                return self.capture_baseline()
            except SnapshotExistsError:
                return self.snapshots.load(self.baseline_name)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _in_scope(self, path: str, patterns: Sequence[str]) -> bool:
        return any(fnmatch.fnmatch(path, p) for p in patterns)

    def detect(self, baseline: Snapshot, cycle: int = 0) -> BoundaryReport:
        """Pure comparison of the current workspace against ``baseline``."""
        current = set(self.snapshots.current_files())
        baseline_files = set(baseline.tracked_files)

        surviving = sorted(baseline_files & current)
        hashes = self.snapshots.current_hashes(surviving)
        modified = [
            f for f in surviving
            if f in baseline.file_hashes
            and hashes.get(f) != baseline.file_hashes[f]
            and not self._in_scope(f, self.allowed_modifications)
        ]
        deleted = sorted(baseline_files - current)
        added = sorted(current - baseline_files)
        expected = self.expected_file_count or len(baseline_files)

        report = BoundaryReport(
            cycle=cycle,
            modified=modified,
            deleted=deleted,
            added=added,
            observed_count=len(current),
            expected_count=expected,
        )

        if modified:
            report.violations.append(BoundaryViolation(
                kind="out_of_scope_modification",
                severity=Severity.HIGH,
                files=modified,
                details={"count": len(modified)},
            ))
        if len(deleted) > self.deletion_tolerance:
            report.violations.append(BoundaryViolation(
                kind="excessive_deletion",
                severity=Severity.HIGH,
                files=deleted,
                details={"count": len(deleted), "tolerance": self.deletion_tolerance},
            ))
        if expected and len(current) < self.completeness_ratio * expected:
            report.violations.append(BoundaryViolation(
                kind="incomplete_workspace",
                severity=Severity.CRITICAL,
                details={
                    "observed": len(current),
                    "expected": expected,
                    "ratio": self.completeness_ratio,
                },
            ))
        if self.scope:
            outside = [f for f in added if not self._in_scope(f, self.scope)]
            if outside:
                report.violations.append(BoundaryViolation(
                    kind="out_of_scope_addition",
                    severity=Severity.MEDIUM,
                    files=outside,
                    details={"scope": list(self.scope)},
                ))
        return report

    def check(self, cycle: Optional[int] = None) -> BoundaryReport:
        """
        Run one monitoring cycle: detect, record new violations, maybe suspend.

        Raises:
            RecordNotFoundError: If no baseline has been captured.
        """
        baseline = self.snapshots.load(self.baseline_name)
        state = self.store.get_json(f"{self.prefix}/state.json") or {}
        cycle = cycle if cycle is not None else int(state.get("cycle", 0)) + 1
        report = self.detect(baseline, cycle)

        reported = set(state.get("reported", []))
        for violation in report.violations:
            if violation.signature in reported:
                continue
            report.new_violations.append(violation)
            entry = {
                "cycle": cycle,
                "agent": self.agent,
                "timestamp": utc_now().isoformat(),
                **violation.to_dict(),
            }
            self.store.append(f"{self.prefix}/violations.jsonl", json.dumps(entry, sort_keys=True))
            self.alerts.write(
                "violation", violation.severity, cycle, violation.kind,
                {"files": violation.files[:50], **violation.details}, agent=self.agent,
            )
            reported.add(violation.signature)

        self.store.put_json(f"{self.prefix}/state.json", {
            "cycle": cycle,
            "reported": sorted(reported),
            "updated": utc_now().isoformat(),
        })

        if report.new_violations and self.auto_pause and self.agent:
            kinds = ", ".join(v.kind for v in report.new_violations)
            self.suspend(self.agent, f"boundary violation: {kinds}")
            report.suspended = True
        elif report.clean:
            logger.debug(f"Boundary cycle {cycle}: clean")
        return report

    def violations(self) -> List[Dict[str, Any]]:
        return self.store.read_jsonl(f"{self.prefix}/violations.jsonl")

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    def _suspension_key(self, agent: str) -> str:
        return f"{self.prefix}/suspensions/{agent}.json"

    def _agent_pid(self, agent: str) -> Optional[int]:
        if self.coordinator is None:
            return None
        record = self.coordinator.find_status(agent)
        return record.pid if record else None

    def suspend(self, agent: str, reason: str) -> Dict[str, Any]:
        """
        Pause the agent's process pending human review.

        A snapshot is captured first and recorded as the backup reference.
        """
        backup_ref = f"suspend-{agent}-{utc_now().strftime('%Y%m%d-%H%M%S-%f')}"
        self.snapshots.capture(backup_ref)

        pid = self._agent_pid(agent)
        record = {
            "agent": agent,
            "pid": pid,
            "reason": reason,
            "backup_ref": backup_ref,
            "timestamp": utc_now().isoformat(),
            "state": "suspended" if pid else "requested",
        }
        self.store.put_json(self._suspension_key(agent), record)

        if pid is None:
            logger.error(f"✗ Cannot pause {agent}: no pid in its status record")
        else:
            self.controller.pause(pid)
        self.alerts.write(
            "suspension", Severity.CRITICAL, 0, "agent_suspended",
            {"reason": reason, "pid": pid, "backup_ref": backup_ref}, agent=agent,
        )
        return record

    def resume(self, agent: str) -> Dict[str, Any]:
        """
        Raises:
            RecordNotFoundError: If the agent is not suspended.
        """
        record = self.store.get_json(self._suspension_key(agent))
        if record is None:
            raise RecordNotFoundError(
                f"Agent {agent} is not suspended", record_type="suspension", record_id=agent
            )
        if record.get("pid"):
            self.controller.resume(int(record["pid"]))
        record["state"] = "resumed"
        record["resumed"] = utc_now().isoformat()
        self.store.put_json(self._suspension_key(agent), record)
        return record

    def suspensions(self) -> List[Dict[str, Any]]:
        return [
            self.store.get_json(key)
            for key in self.store.list(f"{self.prefix}/suspensions")
        ]

    def run(self, interval: float = 30.0, clock: Optional[Clock] = None,
            token: Optional[CancellationToken] = None, max_cycles: Optional[int] = None) -> int:
        self.ensure_baseline()
        task = PeriodicTask(
            name="boundary-monitor",
            interval=interval,
            action=lambda cycle: self.check(),
            clock=clock,
            token=token,
        )
        return task.run(max_cycles=max_cycles)
