"""Agent Safeguards - Coordination and safety layer for multi-agent pipelines.

This package lets autonomous coding agents work on one repository in
parallel without trampling each other or the codebase. It provides a shared
status/handoff store, a phase scheduler over the agent dependency graph,
compliance and boundary monitors, a rollback engine with backups and an
experiment sandbox, plus the ``agent-safeguards`` command line.

Example usage:
    from agent_safeguards import Settings, SafeguardContext

    context = SafeguardContext(Settings.from_env(workspace="."))
    print(context.scheduler.ready_agents())

    engine = context.rollback_engine()
    plan, record = engine.smart(reason="tests broke after merge")
"""

from .agent_runner import AgentRunner, CommandAgentInvoker
from .boundary import BoundaryMonitor, BoundaryReport, BoundaryViolation
from .compliance import ComplianceMonitor, extract_change_set, score_band
from .config import PipelineConfig, Settings, load_pipeline
from .context import SafeguardContext
from .coordination import StatusCoordinator
from .dashboard import PipelineMonitor
from .exceptions import (
    AgentTimeoutError,
    ConfigurationError,
    CyclicDependencyError,
    ExperimentError,
    GitCommandError,
    RecordNotFoundError,
    RecoveryError,
    SafeguardError,
    SnapshotExistsError,
    StoreError,
)
from .experiment import ExperimentManager, ExperimentWatcher
from .git import GitRepository
from .integration import SafeIntegrator
from .models import (
    Agent,
    Blocker,
    BlockerSeverity,
    ComplianceCycleResult,
    Experiment,
    ExperimentStatus,
    ExperimentVerdict,
    RollbackLevel,
    RollbackOutcome,
    RollbackRecord,
    RunState,
    Severity,
    Snapshot,
    StatusRecord,
    compliance_score,
)
from .orchestrator import OrchestratorLoop
from .rollback import RollbackEngine, RollbackPlan
from .scheduler import AgentState, PhaseScheduler
from .snapshots import SnapshotStore
from .store import FileSystemStore, KeyValueStore, MemoryStore
from .tasks import CancellationToken, FakeClock, PeriodicTask, SystemClock
from .verification import CommandTestRunner, RecoveryVerifier, VerificationResult

__all__ = [
    # Models
    "Agent",
    "StatusRecord",
    "Blocker",
    "BlockerSeverity",
    "Severity",
    "Snapshot",
    "ComplianceCycleResult",
    "compliance_score",
    "RollbackLevel",
    "RollbackOutcome",
    "RollbackRecord",
    "RunState",
    "Experiment",
    "ExperimentStatus",
    "ExperimentVerdict",
    # Configuration
    "Settings",
    "PipelineConfig",
    "load_pipeline",
    "SafeguardContext",
    # Store and coordination
    "KeyValueStore",
    "FileSystemStore",
    "MemoryStore",
    "StatusCoordinator",
    "PhaseScheduler",
    "AgentState",
    "OrchestratorLoop",
    "PipelineMonitor",
    # Loops
    "CancellationToken",
    "PeriodicTask",
    "SystemClock",
    "FakeClock",
    # Monitors
    "ComplianceMonitor",
    "extract_change_set",
    "score_band",
    "BoundaryMonitor",
    "BoundaryReport",
    "BoundaryViolation",
    # Recovery
    "GitRepository",
    "SnapshotStore",
    "RollbackEngine",
    "RollbackPlan",
    "RecoveryVerifier",
    "VerificationResult",
    # Agents and experiments
    "AgentRunner",
    "CommandAgentInvoker",
    "CommandTestRunner",
    "ExperimentManager",
    "ExperimentWatcher",
    "SafeIntegrator",
    # Exceptions
    "SafeguardError",
    "StoreError",
    "RecordNotFoundError",
    "ConfigurationError",
    "CyclicDependencyError",
    "SnapshotExistsError",
    "GitCommandError",
    "RecoveryError",
    "ExperimentError",
    "AgentTimeoutError",
]

__version__ = "0.1.0"
