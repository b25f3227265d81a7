"""
Dependency/Phase Scheduler

Agents are nodes of a DAG grouped into ordered phases. The scheduler never
runs an agent; it only answers two questions from handoff markers:

- is agent A ready?      every name in A.depends_on has a handoff
- is phase P complete?   every agent in P has a handoff

Completion is monotonic because handoffs are write-once and never removed
by the scheduler. When a phase completes the scheduler writes the phase
handoff (``<phase>-complete``) so agents depending on the phase become ready.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import PipelineConfig
from .coordination import StatusCoordinator
from .exceptions import ConfigurationError
from .tasks import CancellationToken, Clock, SystemClock

logger = logging.getLogger(__name__)

__all__ = [
    "AgentState",
    "PhaseSummary",
    "PhaseScheduler",
    "phase_handoff_name",
]


def phase_handoff_name(phase: str) -> str:
    return phase.lower()


class AgentState:
    """Dashboard states derived from handoffs and status records."""

    NOT_STARTED = "not_started"
    ACTIVE = "active"
    STALE = "stale"
    COMPLETE = "complete"


@dataclass
class PhaseSummary:
    """Per-phase counts for the dashboard."""

    phase: str
    not_started: int = 0
    active: int = 0
    stale: int = 0
    complete: int = 0
    agents: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.agents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "not_started": self.not_started,
            "active": self.active,
            "stale": self.stale,
            "complete": self.complete,
            "total": self.total,
            "agents": dict(self.agents),
        }


class PhaseScheduler:
    """Readiness and phase completion over a validated pipeline."""

    def __init__(self, pipeline: PipelineConfig, coordinator: StatusCoordinator,
                 clock: Optional[Clock] = None):
        self.pipeline = pipeline
        self.coordinator = coordinator
        self.clock = clock or SystemClock()

    def _dependency_satisfied(self, name: str) -> bool:
        if name in self.pipeline.phases:
            return self.coordinator.has_handoff(phase_handoff_name(name))
        return self.coordinator.has_handoff(name)

    def _agent(self, name: str):
        try:
            return self.pipeline.agents[name]
        except KeyError:
            raise ConfigurationError(f"Unknown agent: {name}")

    def is_ready(self, agent_name: str) -> bool:
        """True iff every dependency of the agent has a handoff marker."""
        agent = self._agent(agent_name)
        return all(self._dependency_satisfied(dep) for dep in agent.depends_on)

    def unmet_dependencies(self, agent_name: str) -> List[str]:
        agent = self._agent(agent_name)
        return [dep for dep in agent.depends_on if not self._dependency_satisfied(dep)]

    def ready_agents(self) -> List[str]:
        """Agents that may run now: ready and not yet handed off."""
        return [
            name for name in self.pipeline.agents
            if not self.coordinator.has_handoff(name) and self.is_ready(name)
        ]

    def is_phase_complete(self, phase: str) -> bool:
        """True iff every agent assigned to ``phase`` has a handoff marker.

        A phase whose handoff was already synthesized stays complete.
        """
        if phase not in self.pipeline.phases:
            raise ConfigurationError(f"Unknown phase: {phase}")
        if self.coordinator.has_handoff(phase_handoff_name(phase)):
            return True
        agents = self.pipeline.agents_in_phase(phase)
        if not agents:
            # An empty phase completes once every earlier phase has
            earlier = self.pipeline.phases[:self.pipeline.phases.index(phase)]
            return all(self.is_phase_complete(p) for p in earlier)
        return all(self.coordinator.has_handoff(a.name) for a in agents)

    def next_phase(self, phase: str) -> Optional[str]:
        index = self.pipeline.phases.index(phase)
        if index + 1 < len(self.pipeline.phases):
            return self.pipeline.phases[index + 1]
        return None

    def synthesize_phase_handoffs(self) -> List[str]:
        """
        Write the phase handoff for every newly complete phase.

        Returns:
            Phases whose handoff was created by this call.
        """
        created = []
        for phase in self.pipeline.phases:
            if self.coordinator.has_handoff(phase_handoff_name(phase)):
                continue
            if not self.is_phase_complete(phase):
                continue
            participants = [a.name for a in self.pipeline.agents_in_phase(phase)]
            next_phase = self.next_phase(phase)
            summary = "Participants:\n" + "".join(f"- {name}\n" for name in participants)
            summary += f"\nNext phase: {next_phase or 'none (pipeline complete)'}\n"
            if self.coordinator.mark_handoff(phase_handoff_name(phase), summary):
                logger.info(f"✓ Phase {phase} complete ({len(participants)} agents)")
                created.append(phase)
        return created

    def tick(self) -> Dict[str, List[str]]:
        """One scheduling pass: synthesize phase handoffs, then compute readiness."""
        completed = self.synthesize_phase_handoffs()
        return {"completed_phases": completed, "ready_agents": self.ready_agents()}

    def pipeline_complete(self) -> bool:
        """True once the final phase has handed off."""
        if not self.pipeline.phases:
            return False
        return self.coordinator.has_handoff(phase_handoff_name(self.pipeline.phases[-1]))

    def agent_state(self, agent_name: str, now: Optional[datetime] = None) -> str:
        if self.coordinator.has_handoff(agent_name):
            return AgentState.COMPLETE
        record = self.coordinator.find_status(agent_name)
        if record is None:
            return AgentState.NOT_STARTED
        if self.coordinator.is_stale(record, now or self.clock.now()):
            return AgentState.STALE
        return AgentState.ACTIVE

    def phase_summaries(self, now: Optional[datetime] = None) -> List[PhaseSummary]:
        now = now or self.clock.now()
        summaries = []
        for phase in self.pipeline.phases:
            summary = PhaseSummary(phase=phase)
            for agent in self.pipeline.agents_in_phase(phase):
                state = self.agent_state(agent.name, now)
                summary.agents[agent.name] = state
                setattr(summary, state, getattr(summary, state) + 1)
            summaries.append(summary)
        return summaries

    def dashboard(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Per-phase counts plus current blockers."""
        now = now or self.clock.now()
        return {
            "timestamp": now.isoformat(),
            "phases": [s.to_dict() for s in self.phase_summaries(now)],
            "ready_agents": self.ready_agents(),
            "blockers": [b.to_dict() for b in self.coordinator.list_blockers()],
            "pipeline_complete": self.pipeline_complete(),
        }

    def wait_until_ready(
        self,
        agent_name: str,
        timeout: float = 3600.0,
        poll_interval: float = 30.0,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """
        Block until the agent's dependencies have handed off.

        Returns:
            True when ready, False on timeout or cancellation.
        """
        token = token or CancellationToken()
        start = self.clock.now()
        while not token.cancelled:
            if self.is_ready(agent_name):
                return True
            elapsed = (self.clock.now() - start).total_seconds()
            if elapsed >= timeout:
                logger.warning(
                    f"⚠ {agent_name} still waiting on {self.unmet_dependencies(agent_name)} "
                    f"after {int(elapsed)}s"
                )
                return False
            logger.info(f"{agent_name} waiting on {self.unmet_dependencies(agent_name)}")
            if self.clock.wait(min(poll_interval, timeout - elapsed), token):
                break
        return False