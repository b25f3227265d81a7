"""Data models for the safeguard layer.

This module provides the records shared between the coordinator, scheduler,
monitors and recovery engine. Every persisted model round-trips through
``to_dict`` / ``from_dict`` so the artifacts on disk stay plain JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ConfigurationError


__all__ = [
    "utc_now",
    "parse_timestamp",
    "BlockerSeverity",
    "Severity",
    "RunState",
    "RollbackLevel",
    "RollbackOutcome",
    "ExperimentStatus",
    "ExperimentVerdict",
    "Agent",
    "StatusRecord",
    "Blocker",
    "Snapshot",
    "ComplianceCycleResult",
    "compliance_score",
    "RollbackRecord",
    "Experiment",
]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC.

    Accepts the trailing ``Z`` that JavaScript's ``toISOString()`` writes.
    """
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BlockerSeverity(Enum):
    """Severity of an agent-authored blocker."""

    NORMAL = "normal"
    CRITICAL = "critical"


class Severity(Enum):
    """Severity attached to compliance and boundary alerts."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RunState(Enum):
    """Bounded-retry state of an agent runner.

    Attributes:
        PENDING: Waiting on dependencies; no budget consumed.
        RUNNING: An attempt is in progress.
        SUCCESS: Target pass rate reached and handoff written.
        RETRY: Attempt failed; another attempt is allowed.
        EXHAUSTED: Restart budget spent; terminal maintenance state.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    RETRY = "retry"
    EXHAUSTED = "exhausted"


class RollbackLevel(Enum):
    """Escalating rollback strategies."""

    GIT = "git"
    SNAPSHOT = "snapshot"
    FILES = "files"
    EMERGENCY = "emergency"


class RollbackOutcome(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExperimentStatus(Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    ANALYZED = "analyzed"
    CLEANED = "cleaned"


class ExperimentVerdict(Enum):
    """Outcome of an experiment analysis."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def description(self) -> str:
        if self is ExperimentVerdict.FAILED:
            return "failed, do not promote"
        return "succeeded, safe to apply same strategy outside the sandbox"


@dataclass(frozen=True)
class Agent:
    """A worker in the pipeline, created from static configuration.

    A frozen dataclass: agents never change for the lifetime of a run.

    Attributes:
        name: Unique agent identity.
        phase: Name of the phase the agent belongs to.
        depends_on: Agents that must hand off before this one is ready.
        scope: Glob patterns describing the files the agent may create.
        test_command: Shell command that runs the agent's tests.
        max_restarts: Bounded retry budget.
        test_scope: Glob patterns new test files must match.

    Raises:
        ConfigurationError: If the name or phase is empty, or the agent
            depends on itself.
    """

    name: str
    phase: str
    depends_on: Tuple[str, ...] = ()
    scope: Tuple[str, ...] = ()
    test_command: Optional[str] = None
    max_restarts: int = 5
    test_scope: Tuple[str, ...] = ("*integration*",)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ConfigurationError("Agent name cannot be empty")
        if not self.phase or not self.phase.strip():
            raise ConfigurationError(f"Agent {self.name} has no phase")
        if self.name in self.depends_on:
            raise ConfigurationError(f"Agent {self.name} depends on itself")
        if self.max_restarts < 0:
            raise ConfigurationError(
                f"Agent {self.name} max_restarts must be >= 0, got {self.max_restarts}"
            )
        # Normalise list input from config files
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "scope", tuple(self.scope))
        object.__setattr__(self, "test_scope", tuple(self.test_scope))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase,
            "depends_on": list(self.depends_on),
            "scope": list(self.scope),
            "test_command": self.test_command,
            "max_restarts": self.max_restarts,
            "test_scope": list(self.test_scope),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agent":
        return cls(
            name=data["name"],
            phase=data["phase"],
            depends_on=tuple(data.get("depends_on", ())),
            scope=tuple(data.get("scope", ())),
            test_command=data.get("test_command"),
            max_restarts=int(data.get("max_restarts", 5)),
            test_scope=tuple(data.get("test_scope", ("*integration*",))),
        )


@dataclass
class StatusRecord:
    """Per-agent status document, written only by its own agent.

    Serialized with the camelCase field names other tooling reads
    (``phase``, ``testsPassing``, ``testsTotal``, ``currentTask``,
    ``lastUpdate``). Staleness is never stored; see
    ``StatusCoordinator.is_stale``.

    Attributes:
        phase: Current phase label.
        tests_passing: Number of passing tests in the last run.
        tests_total: Total number of tests in the last run.
        current_task: Free-form description of the current work.
        last_update: When the record was written (UTC).
        state: Optional runner state label.
        pid: Optional process id of the agent, used for suspension.
    """

    phase: str
    tests_passing: int = 0
    tests_total: int = 0
    current_task: str = ""
    last_update: datetime = field(default_factory=utc_now)
    state: Optional[str] = None
    pid: Optional[int] = None

    @property
    def pass_rate(self) -> float:
        """Percentage of passing tests, 0 when no tests ran."""
        if self.tests_total <= 0:
            return 0.0
        return self.tests_passing * 100.0 / self.tests_total

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "phase": self.phase,
            "testsPassing": self.tests_passing,
            "testsTotal": self.tests_total,
            "currentTask": self.current_task,
            "lastUpdate": self.last_update.isoformat(),
        }
        if self.state is not None:
            data["state"] = self.state
        if self.pid is not None:
            data["pid"] = self.pid
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusRecord":
        return cls(
            phase=data["phase"],
            tests_passing=int(data.get("testsPassing", 0)),
            tests_total=int(data.get("testsTotal", 0)),
            current_task=data.get("currentTask", ""),
            last_update=parse_timestamp(data["lastUpdate"]),
            state=data.get("state"),
            pid=data.get("pid"),
        )


@dataclass
class Blocker:
    """An agent-authored fact that it cannot proceed."""

    agent: str
    reason: str
    severity: BlockerSeverity = BlockerSeverity.NORMAL
    created: datetime = field(default_factory=utc_now)

    @property
    def is_critical(self) -> bool:
        return self.severity is BlockerSeverity.CRITICAL

    def to_markdown(self) -> str:
        """Render the blocker artifact. Critical blockers carry the CRITICAL token."""
        marker = "CRITICAL" if self.is_critical else "NORMAL"
        return (
            f"# Blocker: {self.agent}\n\n"
            f"Severity: {marker}\n"
            f"Reported: {self.created.isoformat()}\n\n"
            f"{self.reason}\n"
        )

    @classmethod
    def from_markdown(cls, agent: str, text: str, created: Optional[datetime] = None) -> "Blocker":
        """Parse a blocker artifact written by any tool.

        Only the CRITICAL keyword is significant; everything else is free text.
        """
        severity = BlockerSeverity.CRITICAL if "CRITICAL" in text else BlockerSeverity.NORMAL
        body = [
            line for line in text.splitlines()
            if line.strip() and not line.startswith(("# Blocker:", "Severity:", "Reported:"))
        ]
        return cls(
            agent=agent,
            reason="\n".join(body).strip(),
            severity=severity,
            created=created or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "reason": self.reason,
            "severity": self.severity.value,
            "created": self.created.isoformat(),
        }


@dataclass
class Snapshot:
    """Immutable capture of workspace state.

    Attributes:
        name: Unique snapshot name.
        created: Capture time (UTC).
        commit: HEAD commit at capture, None outside a repository.
        branch: Checked-out branch at capture.
        tracked_files: Tracked and untracked-but-not-ignored files.
        file_hashes: SHA-256 of each listed file at capture.
        manifests: Manifest files copied into the snapshot.
        history: Short ``git log --oneline`` excerpt, newest first.
        working_tree_status: ``git status --porcelain`` lines.
    """

    name: str
    created: datetime
    commit: Optional[str] = None
    branch: Optional[str] = None
    tracked_files: List[str] = field(default_factory=list)
    file_hashes: Dict[str, str] = field(default_factory=dict)
    manifests: List[str] = field(default_factory=list)
    history: List[str] = field(default_factory=list)
    working_tree_status: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created": self.created.isoformat(),
            "commit": self.commit,
            "branch": self.branch,
            "tracked_files": list(self.tracked_files),
            "file_hashes": dict(self.file_hashes),
            "manifests": list(self.manifests),
            "history": list(self.history),
            "working_tree_status": list(self.working_tree_status),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            name=data["name"],
            created=parse_timestamp(data["created"]),
            commit=data.get("commit"),
            branch=data.get("branch"),
            tracked_files=list(data.get("tracked_files", [])),
            file_hashes=dict(data.get("file_hashes", {})),
            manifests=list(data.get("manifests", [])),
            history=list(data.get("history", [])),
            working_tree_status=list(data.get("working_tree_status", [])),
        )


def compliance_score(violations: int, warnings: int) -> int:
    """Bounded compliance score: ``max(0, 100 - 10v - 2w)``."""
    return max(0, 100 - 10 * violations - 2 * warnings)


@dataclass
class ComplianceCycleResult:
    """Counts produced by one compliance cycle."""

    agent: str
    cycle: int
    violations: int = 0
    warnings: int = 0
    findings: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def score(self) -> int:
        return compliance_score(self.violations, self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "cycle": self.cycle,
            "violations": self.violations,
            "warnings": self.warnings,
            "score": self.score,
            "findings": list(self.findings),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComplianceCycleResult":
        return cls(
            agent=data["agent"],
            cycle=int(data["cycle"]),
            violations=int(data.get("violations", 0)),
            warnings=int(data.get("warnings", 0)),
            findings=list(data.get("findings", [])),
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class RollbackRecord:
    """Audit entry for one rollback invocation."""

    record_id: str
    level: RollbackLevel
    target: str
    reason: str
    backup_ref: Optional[str] = None
    outcome: RollbackOutcome = RollbackOutcome.PENDING
    timestamp: datetime = field(default_factory=utc_now)
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "level": self.level.value,
            "target": self.target,
            "reason": self.reason,
            "backup_ref": self.backup_ref,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackRecord":
        return cls(
            record_id=data["id"],
            level=RollbackLevel(data["level"]),
            target=data["target"],
            reason=data.get("reason", ""),
            backup_ref=data.get("backup_ref"),
            outcome=RollbackOutcome(data.get("outcome", "pending")),
            timestamp=parse_timestamp(data["timestamp"]),
            detail=data.get("detail", ""),
        )


@dataclass
class Experiment:
    """A disposable sandbox run of the pipeline."""

    name: str
    branch: str
    base_branch: str
    base_commit: str
    target: str
    created: datetime = field(default_factory=utc_now)
    status: ExperimentStatus = ExperimentStatus.CREATED
    verdict: Optional[ExperimentVerdict] = None
    pid: Optional[int] = None
    baseline_snapshot: str = "baseline"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "base_commit": self.base_commit,
            "target": self.target,
            "created": self.created.isoformat(),
            "status": self.status.value,
            "verdict": self.verdict.value if self.verdict else None,
            "pid": self.pid,
            "baseline_snapshot": self.baseline_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Experiment":
        verdict = data.get("verdict")
        return cls(
            name=data["name"],
            branch=data["branch"],
            base_branch=data["base_branch"],
            base_commit=data["base_commit"],
            target=data["target"],
            created=parse_timestamp(data["created"]),
            status=ExperimentStatus(data.get("status", "created")),
            verdict=ExperimentVerdict(verdict) if verdict else None,
            pid=data.get("pid"),
            baseline_snapshot=data.get("baseline_snapshot", "baseline"),
        )
