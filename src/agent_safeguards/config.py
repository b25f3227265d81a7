"""Configuration for the safeguard layer.

Two sources feed a run:

- ``Settings``: tunables (intervals, thresholds, timeouts) with conservative
  defaults. Environment variables named ``SAFEGUARDS_<FIELD>`` override them.
- ``PipelineConfig``: the static agent graph, loaded from YAML or JSON. The
  graph is validated at load time; a cyclic dependency never reaches the
  scheduler.

Example ``agents.yaml``::

    phases: [RED, GREEN, REFACTOR, AUDIT, FINAL]
    agents:
      - name: schema
        phase: GREEN
      - name: services
        phase: GREEN
        depends_on: [schema]
        scope: ["src/services/**"]
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .exceptions import ConfigurationError, CyclicDependencyError
from .models import Agent

logger = logging.getLogger(__name__)

__all__ = [
    "ENV_PREFIX",
    "DEFAULT_PHASES",
    "Settings",
    "PipelineConfig",
    "load_pipeline",
    "find_cycle",
]

ENV_PREFIX = "SAFEGUARDS_"

DEFAULT_PHASES = ["RED", "GREEN", "REFACTOR", "AUDIT", "FINAL"]

DEFAULT_PIPELINE: Dict[str, Any] = {
    "phases": DEFAULT_PHASES,
    "agents": [],
}


@dataclass
class Settings:
    """Tunables for every loop and heuristic.

    Thresholds are heuristics, not derived values; they are exposed so an
    operator can tune them per project.
    """

    shared_dir: str = ".safeguards"
    workspace: str = "."
    pipeline_file: str = "agents.yaml"

    # Loop intervals (seconds)
    poll_interval: float = 30.0
    compliance_interval: float = 15.0
    boundary_interval: float = 30.0
    experiment_interval: float = 60.0

    # Coordination
    freshness_window: float = 300.0
    dependency_wait_timeout: float = 3600.0

    # Bounded retry
    max_restarts: int = 5
    target_pass_rate: float = 85.0
    test_timeout: float = 600.0
    agent_timeout: float = 1800.0

    # Compliance heuristics
    high_modification_threshold: int = 50
    business_keyword_threshold: int = 5
    repeated_critical_threshold: int = 2

    # Boundary heuristics
    deletion_tolerance: int = 5
    completeness_ratio: float = 0.8
    expected_file_count: int = 0
    auto_pause: bool = False

    # Experiment heuristics
    experiment_deletion_tolerance: int = 10
    experiment_modification_tolerance: int = 100

    # Recovery
    baseline_ref: str = "origin/main"
    baseline_snapshot: str = "baseline"
    smart_max_commits_ahead: int = 1
    smart_max_modified_files: int = 10
    manifest_files: Tuple[str, ...] = (
        "package.json",
        "package-lock.json",
        "tsconfig.json",
        "pyproject.toml",
        "requirements.txt",
    )
    build_command: Optional[str] = None
    test_command: Optional[str] = None
    pipeline_command: Optional[str] = None
    agent_command: Optional[str] = None
    command_timeout: float = 600.0

    @property
    def shared_path(self) -> Path:
        path = Path(self.shared_dir)
        if not path.is_absolute():
            path = Path(self.workspace) / path
        return path.resolve()

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).resolve()

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "Settings":
        """Build settings from defaults, then environment, then explicit overrides.

        Raises:
            ConfigurationError: If an environment value cannot be converted.
        """
        environ = os.environ if environ is None else environ
        settings = cls()
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _convert(f.name, raw, getattr(settings, f.name))
        values.update({k: v for k, v in overrides.items() if v is not None})
        return replace(settings, **values)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["manifest_files"] = list(self.manifest_files)
        return data


def _convert(name: str, raw: str, default: Any) -> Any:
    try:
        if isinstance(default, bool):
            if raw.strip().lower() in ("1", "true", "yes", "on"):
                return True
            if raw.strip().lower() in ("0", "false", "no", "off", ""):
                return False
            raise ValueError(f"not a boolean: {raw}")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, tuple):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
        return raw
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {e}")


# ==============================================================================
# Pipeline definition
# ==============================================================================

def find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one dependency cycle in ``graph`` or None.

    Args:
        graph: Node name -> names it depends on.

    Returns:
        The cycle as a list of names with the first name repeated at the end.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in graph.get(node, []):
            if color.get(dep, BLACK) == GREY:
                return stack[stack.index(dep):] + [dep]
            if color.get(dep) == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in sorted(graph):
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


@dataclass
class PipelineConfig:
    """Validated agent graph grouped into ordered phases.

    A dependency may name another agent or a phase. A phase dependency is
    satisfied by the phase handoff, which the scheduler synthesizes once every
    agent in that phase has handed off.
    """

    phases: List[str] = field(default_factory=lambda: list(DEFAULT_PHASES))
    agents: Dict[str, Agent] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Reject unknown phases, unknown dependencies, name clashes and cycles.

        Raises:
            ConfigurationError: On any structural problem.
            CyclicDependencyError: If dependencies form a cycle.
        """
        if len(set(self.phases)) != len(self.phases):
            raise ConfigurationError(f"Duplicate phase names in {self.phases}")
        phase_keys = {p.lower() for p in self.phases}
        for agent in self.agents.values():
            if agent.phase not in self.phases:
                raise ConfigurationError(
                    f"Agent {agent.name} assigned to unknown phase {agent.phase}"
                )
            if agent.name.lower() in phase_keys:
                raise ConfigurationError(
                    f"Agent name {agent.name} clashes with a phase name"
                )
            for dep in agent.depends_on:
                if dep not in self.agents and dep not in self.phases:
                    raise ConfigurationError(
                        f"Agent {agent.name} depends on unknown agent or phase {dep}"
                    )

        cycle = find_cycle(self.dependency_graph())
        if cycle:
            raise CyclicDependencyError(
                f"Cyclic dependency: {' -> '.join(cycle)}", cycle=cycle
            )

    def dependency_graph(self) -> Dict[str, List[str]]:
        """Graph over agents and phases; a phase depends on all its agents."""
        graph: Dict[str, List[str]] = {
            name: list(agent.depends_on) for name, agent in self.agents.items()
        }
        for phase in self.phases:
            graph[phase] = [a.name for a in self.agents.values() if a.phase == phase]
        return graph

    def agents_in_phase(self, phase: str) -> List[Agent]:
        return [a for a in self.agents.values() if a.phase == phase]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_max_restarts: int = 5) -> "PipelineConfig":
        merged = dict(DEFAULT_PIPELINE)
        merged.update(data or {})
        phases = list(merged.get("phases") or DEFAULT_PHASES)
        agents: Dict[str, Agent] = {}
        for entry in merged.get("agents") or []:
            if not isinstance(entry, dict) or "name" not in entry:
                raise ConfigurationError(f"Invalid agent entry: {entry!r}")
            entry = dict(entry)
            entry.setdefault("max_restarts", default_max_restarts)
            if "phase" not in entry:
                raise ConfigurationError(f"Agent {entry['name']} has no phase")
            agent = Agent.from_dict(entry)
            if agent.name in agents:
                raise ConfigurationError(f"Duplicate agent name: {agent.name}")
            agents[agent.name] = agent
        return cls(phases=phases, agents=agents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phases": list(self.phases),
            "agents": [a.to_dict() for a in self.agents.values()],
        }


def load_pipeline(path: Path, default_max_restarts: int = 5) -> PipelineConfig:
    """Load and validate a pipeline definition from YAML or JSON.

    A missing file yields the default (empty) pipeline.

    Raises:
        ConfigurationError: If the file cannot be parsed or is invalid.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"Pipeline file not found at {path}, using defaults")
        return PipelineConfig.from_dict({}, default_max_restarts)

    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to parse pipeline file {path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to read pipeline file {path}: {e}")

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(f"Pipeline file {path} must contain a mapping")

    pipeline = PipelineConfig.from_dict(data or {}, default_max_restarts)
    logger.info(
        f"Loaded pipeline from {path}: {len(pipeline.agents)} agents "
        f"in {len(pipeline.phases)} phases"
    )
    return pipeline
