"""
Pipeline Monitoring Interface

Read-only views over the shared store for operators:
- Per-phase agent counts (not started / active / stale / complete)
- Agent status records and restart budgets
- Blockers, escalations, compliance scores and boundary violations
- Overall health: HEALTHY, DEGRADED or UNHEALTHY
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .compliance import score_band
from .coordination import StatusCoordinator
from .models import RunState, compliance_score
from .scheduler import AgentState, PhaseScheduler
from .store import KeyValueStore

logger = logging.getLogger(__name__)

__all__ = ["PipelineMonitor", "format_dashboard", "format_health"]


class PipelineMonitor:
    """
    Query interface over pipeline state.

    Never writes; safe to run next to any number of agents and monitors.
    """

    def __init__(self, scheduler: PhaseScheduler, store: KeyValueStore):
        self.scheduler = scheduler
        self.coordinator: StatusCoordinator = scheduler.coordinator
        self.store = store

    def _compliance_scores(self) -> Dict[str, Dict[str, Any]]:
        scores = {}
        for key in self.store.list("compliance"):
            parts = key.split("/")
            if len(parts) != 3 or parts[2] != "state.json":
                continue
            state = self.store.get_json(key) or {}
            score = compliance_score(
                int(state.get("total_violations", 0)), int(state.get("total_warnings", 0))
            )
            scores[parts[1]] = {"score": score, **score_band(score)}
        return scores

    def get_dashboard(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Returns complete dashboard of pipeline activity.

        Returns:
            Dictionary containing:
            - phases: per-phase counts and agent states
            - active_agents / stale_agents: agents with a status record
            - ready_agents: agents whose dependencies are met
            - blockers, escalations
            - compliance: score and band per monitored agent
            - boundary_violations: number of recorded violations
        """
        now = now or self.scheduler.clock.now()
        dashboard = self.scheduler.dashboard(now)
        dashboard.update({
            "active_agents": [],
            "stale_agents": [],
            "escalations": sorted(
                key.rsplit("/", 1)[-1].rsplit(".", 1)[0] for key in self.store.list("escalations")
            ),
            "compliance": self._compliance_scores(),
            "boundary_violations": len(self.store.read_jsonl("boundary/violations.jsonl")),
        })

        for name in self.scheduler.pipeline.agents:
            record = self.coordinator.find_status(name)
            if record is None or self.coordinator.has_handoff(name):
                continue
            seconds_ago = int((now - record.last_update).total_seconds())
            info = {
                "name": name,
                "phase": record.phase,
                "task": record.current_task,
                "tests": f"{record.tests_passing}/{record.tests_total}",
                "state": record.state,
                "last_update": f"{seconds_ago}s ago",
            }
            if self.coordinator.is_stale(record, now):
                dashboard["stale_agents"].append(info)
            else:
                dashboard["active_agents"].append(info)
        return dashboard

    def get_agent_status(self, name: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Detailed status for one agent, or None if it has never reported.
        """
        record = self.coordinator.find_status(name)
        if record is None:
            return None
        now = now or self.scheduler.clock.now()
        counter = self.coordinator.read_restart_counter(name)
        return {
            "name": name,
            **record.to_dict(),
            "pass_rate": round(record.pass_rate, 1),
            "seconds_since_update": int((now - record.last_update).total_seconds()),
            "is_stale": self.coordinator.is_stale(record, now),
            "handoff": self.coordinator.has_handoff(name),
            "restarts": counter["count"],
            "run_state": counter["state"],
            "unmet_dependencies": (
                self.scheduler.unmet_dependencies(name) if name in self.scheduler.pipeline.agents else []
            ),
        }

    def get_system_health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Overall system health check.

        DEGRADED: any stale agent, or an agent out of restart budget.
        UNHEALTHY: two or more stale agents, or any critical blocker.
        """
        now = now or self.scheduler.clock.now()
        health: Dict[str, Any] = {
            "total_agents": len(self.scheduler.pipeline.agents),
            "active_agents": 0,
            "stale_agents": 0,
            "complete_agents": 0,
            "exhausted_agents": 0,
            "critical_blockers": 0,
            "health_status": "HEALTHY",
            "issues": [],
            "timestamp": now.isoformat(),
        }

        for name in self.scheduler.pipeline.agents:
            state = self.scheduler.agent_state(name, now)
            if state == AgentState.COMPLETE:
                health["complete_agents"] += 1
            elif state == AgentState.STALE:
                health["stale_agents"] += 1
                health["issues"].append(f"Agent {name} appears stale (no status update)")
            elif state == AgentState.ACTIVE:
                health["active_agents"] += 1
            if self.coordinator.read_restart_counter(name)["state"] == RunState.EXHAUSTED.value:
                health["exhausted_agents"] += 1
                health["issues"].append(f"Agent {name} exhausted its restart budget")

        critical = [b for b in self.coordinator.list_blockers() if b.is_critical]
        health["critical_blockers"] = len(critical)
        for blocker in critical:
            health["issues"].append(f"Critical blocker from {blocker.agent}: {blocker.reason}")

        if health["stale_agents"] > 0 or health["exhausted_agents"] > 0:
            health["health_status"] = "DEGRADED"
        if health["stale_agents"] >= 2 or critical:
            health["health_status"] = "UNHEALTHY"
        return health


def format_dashboard(dashboard: Dict[str, Any]) -> str:
    """
    Format dashboard as readable text.

    Args:
        dashboard: Dashboard dict from get_dashboard()
    """
    lines = []
    lines.append("=" * 80)
    lines.append("PIPELINE DASHBOARD")
    lines.append("=" * 80)
    lines.append(f"Timestamp: {dashboard['timestamp']}")
    lines.append(f"Pipeline complete: {'yes' if dashboard['pipeline_complete'] else 'no'}")
    lines.append("")

    lines.append(f"{'Phase':<12} {'not started':>12} {'active':>8} {'stale':>8} {'complete':>9}")
    for phase in dashboard["phases"]:
        lines.append(
            f"{phase['phase']:<12} {phase['not_started']:>12} {phase['active']:>8} "
            f"{phase['stale']:>8} {phase['complete']:>9}"
        )
    lines.append("")

    lines.append("Ready Agents:")
    if dashboard["ready_agents"]:
        for name in dashboard["ready_agents"]:
            lines.append(f"  - {name}")
    else:
        lines.append("  (none)")
    lines.append("")

    lines.append("Active Agents:")
    if dashboard.get("active_agents"):
        for agent in dashboard["active_agents"]:
            lines.append(f"  - {agent['name']} [{agent['phase']}] tests {agent['tests']}")
            lines.append(f"    Task: {agent['task']}")
            lines.append(f"    Updated: {agent['last_update']}")
    else:
        lines.append("  (none)")
    lines.append("")

    if dashboard.get("stale_agents"):
        lines.append("Stale Agents:")
        for agent in dashboard["stale_agents"]:
            lines.append(f"  - {agent['name']} (updated {agent['last_update']})")
        lines.append("")

    lines.append("Blockers:")
    if dashboard["blockers"]:
        for blocker in dashboard["blockers"]:
            marker = "CRITICAL" if blocker["severity"] == "critical" else "normal"
            lines.append(f"  - {blocker['agent']} ({marker}): {blocker['reason']}")
    else:
        lines.append("  (none)")
    lines.append("")

    if dashboard.get("compliance"):
        lines.append("Compliance:")
        for agent, score in sorted(dashboard["compliance"].items()):
            lines.append(f"  - {agent}: {score['score']} ({score['band']})")
        lines.append("")

    lines.append(f"Boundary violations recorded: {dashboard.get('boundary_violations', 0)}")
    lines.append("=" * 80)
    return "\n".join(lines)


def format_health(health: Dict[str, Any]) -> List[str]:
    lines = [
        f"System Health: {health['health_status']}",
        f"Active Agents: {health['active_agents']}/{health['total_agents']}",
        f"Stale Agents: {health['stale_agents']}",
        f"Complete Agents: {health['complete_agents']}",
        f"Exhausted Agents: {health['exhausted_agents']}",
    ]
    if health["issues"]:
        lines.append("")
        lines.append("Issues:")
        lines.extend(f"  - {issue}" for issue in health["issues"])
    return lines
