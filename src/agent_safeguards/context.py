"""Wiring: build every component for one workspace from Settings."""

import logging
from pathlib import Path
from typing import List, Optional

from .boundary import BoundaryMonitor
from .compliance import ComplianceMonitor, extract_change_set
from .config import PipelineConfig, Settings, load_pipeline
from .coordination import StatusCoordinator
from .dashboard import PipelineMonitor
from .experiment import ExperimentManager
from .git import GitRepository
from .models import Agent
from .rollback import RollbackEngine
from .rules import default_rules
from .scheduler import PhaseScheduler
from .snapshots import SnapshotStore
from .store import FileSystemStore
from .tasks import Clock, SystemClock
from .verification import RecoveryVerifier

logger = logging.getLogger(__name__)

__all__ = ["SafeguardContext"]


class SafeguardContext:
    """Components sharing one workspace, one shared store and one pipeline."""

    def __init__(self, settings: Settings, pipeline: Optional[PipelineConfig] = None,
                 clock: Optional[Clock] = None):
        self.settings = settings
        self.workspace: Path = settings.workspace_path
        self.shared: Path = settings.shared_path
        self.clock = clock or SystemClock()
        self.store = FileSystemStore(self.shared)
        self.git = GitRepository(self.workspace, timeout=settings.command_timeout)
        self.coordinator = StatusCoordinator(self.store, settings.freshness_window)
        if pipeline is None:
            pipeline_path = Path(settings.pipeline_file)
            if not pipeline_path.is_absolute():
                pipeline_path = self.workspace / pipeline_path
            pipeline = load_pipeline(pipeline_path, settings.max_restarts)
        self.pipeline = pipeline
        self.scheduler = PhaseScheduler(pipeline, self.coordinator, self.clock)
        self.snapshots = SnapshotStore(
            self.store, self.workspace, self.git,
            manifest_files=settings.manifest_files,
            exclude=self.exclude,
        )
        self.verifier = RecoveryVerifier(
            self.workspace,
            build_command=settings.build_command,
            test_command=settings.test_command,
            timeout=settings.command_timeout,
            store=self.store,
        )

    @property
    def exclude(self) -> List[str]:
        """The shared directory, relative to the workspace, when nested in it."""
        try:
            return [self.shared.relative_to(self.workspace).as_posix()]
        except ValueError:
            return []

    def agent(self, name: str) -> Optional[Agent]:
        return self.pipeline.agents.get(name)

    def rollback_engine(self) -> RollbackEngine:
        s = self.settings
        return RollbackEngine(
            self.store, self.git, self.snapshots,
            verifier=self.verifier,
            baseline_ref=s.baseline_ref,
            baseline_snapshot=s.baseline_snapshot,
            manifest_files=s.manifest_files,
            exclude=self.exclude,
            max_commits_ahead=s.smart_max_commits_ahead,
            max_modified_files=s.smart_max_modified_files,
        )

    def boundary_monitor(self, agent: Optional[str] = None) -> BoundaryMonitor:
        s = self.settings
        definition = self.agent(agent) if agent else None
        return BoundaryMonitor(
            self.store, self.snapshots,
            coordinator=self.coordinator,
            agent=agent,
            scope=definition.scope if definition else (),
            deletion_tolerance=s.deletion_tolerance,
            completeness_ratio=s.completeness_ratio,
            expected_file_count=s.expected_file_count,
            auto_pause=s.auto_pause,
            baseline_name=s.baseline_snapshot,
        )

    def compliance_monitor(self, agent: str) -> ComplianceMonitor:
        s = self.settings
        definition = self.agent(agent) or Agent(name=agent, phase="unassigned")
        boundary = self.boundary_monitor(agent)
        return ComplianceMonitor(
            self.store,
            agent,
            change_provider=lambda: extract_change_set(
                self.git, self.workspace, s.manifest_files, exclude=self.exclude
            ),
            rules=default_rules(
                definition,
                modification_threshold=s.high_modification_threshold,
                business_keyword_threshold=s.business_keyword_threshold,
            ),
            repeated_critical_threshold=s.repeated_critical_threshold,
            auto_pause=s.auto_pause,
            suspender=boundary.suspend,
        )

    def experiment_manager(self) -> ExperimentManager:
        s = self.settings
        return ExperimentManager(
            self.shared / "experiments",
            self.git,
            deletion_tolerance=s.experiment_deletion_tolerance,
            modification_tolerance=s.experiment_modification_tolerance,
            pipeline_command=s.pipeline_command,
            manifest_files=s.manifest_files,
        )

    def pipeline_monitor(self) -> PipelineMonitor:
        return PipelineMonitor(self.scheduler, self.store)
