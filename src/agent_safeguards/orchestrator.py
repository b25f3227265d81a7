"""
Orchestrator Loop

Runs the phase scheduler on a fixed interval until the pipeline completes or
a shutdown signal arrives. Each cycle:

1. Synthesizes phase handoffs for newly complete phases
2. Announces agents that became ready
3. Flags agents whose status went stale
4. Escalates critical blockers
5. Saves a state snapshot

The loop never runs agents itself. Everything it observes is also written to
``logs/orchestrator_events.jsonl`` as one JSON object per event.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .dashboard import PipelineMonitor
from .models import utc_now
from .scheduler import AgentState, PhaseScheduler
from .store import KeyValueStore
from .tasks import CancellationToken, Clock, PeriodicTask, SystemClock, install_signal_handlers

logger = logging.getLogger(__name__)

__all__ = ["EventType", "MonitoringEvent", "StructuredLogger", "OrchestratorLoop"]

EVENTS_KEY = "logs/orchestrator_events.jsonl"
STATE_KEY = "orchestrator/state.json"
FINAL_DASHBOARD_KEY = "orchestrator/final-dashboard.json"


class EventType(Enum):
    """Types of orchestrator events."""
    ORCHESTRATOR_STARTED = "orchestrator_started"
    ORCHESTRATOR_SHUTDOWN = "orchestrator_shutdown"
    CYCLE_START = "cycle_start"
    CYCLE_END = "cycle_end"
    AGENT_READY = "agent_ready"
    PHASE_COMPLETE = "phase_complete"
    AGENT_STALE = "agent_stale"
    ESCALATION = "escalation"


@dataclass
class MonitoringEvent:
    """Structured event for JSON logging."""
    event_type: EventType
    timestamp: str
    cycle: int
    payload: Dict[str, Any] = field(default_factory=dict)
    agent: Optional[str] = None
    phase: Optional[str] = None

    def to_json(self) -> str:
        data = {
            "event": self.event_type.value,
            "timestamp": self.timestamp,
            "cycle": self.cycle,
            **self.payload
        }
        if self.agent:
            data["agent"] = self.agent
        if self.phase:
            data["phase"] = self.phase
        return json.dumps(data, sort_keys=True)


class StructuredLogger:
    """
    JSON event stream next to the human-readable log.

    Events go to ``logs/orchestrator_events.jsonl`` in the shared store; a
    one-line text version goes to the module logger.
    """

    def __init__(self, store: KeyValueStore, key: str = EVENTS_KEY):
        self.store = store
        self.key = key

    def log_event(self, event: MonitoringEvent) -> None:
        self.store.append(self.key, event.to_json())
        message = self._format_text_message(event)
        if event.event_type in (EventType.AGENT_STALE, EventType.ESCALATION):
            logger.warning(message)
        else:
            logger.info(message)

    def _format_text_message(self, event: MonitoringEvent) -> str:
        base = f"[{event.event_type.value}] cycle={event.cycle}"
        if event.agent:
            base += f" agent={event.agent}"
        if event.phase:
            base += f" phase={event.phase}"
        payload_items = [f"{key}={value}" for key, value in event.payload.items()]
        if payload_items:
            base += f" {' '.join(payload_items)}"
        return base

    def events(self) -> List[Dict[str, Any]]:
        return self.store.read_jsonl(self.key)


class OrchestratorLoop:
    """
    Main scheduling loop.

    Args:
        scheduler: Phase scheduler over the pipeline
        store: Shared store (events, state snapshot, final dashboard)
        interval: Seconds between cycles
        clock: Time source (FakeClock in tests)
        token: Cancellation token; a fresh one when omitted
        handle_signals: Install SIGINT/SIGTERM handlers that cancel the token
    """

    def __init__(
        self,
        scheduler: PhaseScheduler,
        store: KeyValueStore,
        interval: float = 30.0,
        clock: Optional[Clock] = None,
        token: Optional[CancellationToken] = None,
        handle_signals: bool = False,
    ):
        self.scheduler = scheduler
        self.coordinator = scheduler.coordinator
        self.store = store
        self.interval = interval
        self.clock = clock or SystemClock()
        self.token = token or CancellationToken()
        self.monitor = PipelineMonitor(scheduler, store)
        self.structured_logger = StructuredLogger(store)
        self.cycle_count = 0
        self.start_time: datetime = self.clock.now()
        self.announced_ready: Set[str] = set()
        self.stale_agents: Set[str] = set()
        self.completed_phases: List[str] = []
        self.escalations: List[str] = []

        if handle_signals:
            install_signal_handlers(self.token)

    def _emit_event(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None,
                    agent: Optional[str] = None, phase: Optional[str] = None) -> None:
        self.structured_logger.log_event(MonitoringEvent(
            event_type=event_type,
            timestamp=self.clock.now().isoformat(),
            cycle=self.cycle_count,
            payload=payload or {},
            agent=agent,
            phase=phase,
        ))

    def run(self, max_cycles: Optional[int] = None) -> int:
        """
        Loop until the pipeline completes, the token is cancelled or
        ``max_cycles`` ran.

        Returns:
            Number of cycles executed
        """
        self.start_time = self.clock.now()
        logger.info("=" * 80)
        logger.info("ORCHESTRATOR STARTING")
        logger.info(f"Phases: {' -> '.join(self.scheduler.pipeline.phases)}")
        logger.info(f"Agents: {len(self.scheduler.pipeline.agents)}")
        logger.info(f"Loop interval: {self.interval}s")
        logger.info("=" * 80)
        self._emit_event(EventType.ORCHESTRATOR_STARTED, payload={
            "agents": len(self.scheduler.pipeline.agents),
            "phases": list(self.scheduler.pipeline.phases),
            "interval": self.interval,
        })

        task = PeriodicTask(
            name="orchestrator",
            interval=self.interval,
            action=self._execute_cycle,
            clock=self.clock,
            token=self.token,
            on_stop=lambda cycles: self._shutdown(),
        )
        return task.run(max_cycles=max_cycles)

    def _execute_cycle(self, cycle: int) -> None:
        self.cycle_count = cycle
        cycle_start = self.clock.now()
        self._emit_event(EventType.CYCLE_START, payload={
            "uptime": self._format_duration(cycle_start - self.start_time),
        })

        result = self.scheduler.tick()
        for phase in result["completed_phases"]:
            self.completed_phases.append(phase)
            self._emit_event(EventType.PHASE_COMPLETE, phase=phase, payload={
                "next_phase": self.scheduler.next_phase(phase),
            })

        for name in result["ready_agents"]:
            if name not in self.announced_ready:
                self.announced_ready.add(name)
                self._emit_event(EventType.AGENT_READY, agent=name)

        now = self.clock.now()
        for name in self.scheduler.pipeline.agents:
            if self.scheduler.agent_state(name, now) == AgentState.STALE:
                if name not in self.stale_agents:
                    self.stale_agents.add(name)
                    self._emit_event(EventType.AGENT_STALE, agent=name)
            else:
                self.stale_agents.discard(name)

        for name in self.coordinator.escalate_critical_blockers():
            self.escalations.append(name)
            self._emit_event(EventType.ESCALATION, agent=name)

        self._snapshot_state()
        self._emit_event(EventType.CYCLE_END, payload={
            "ready": len(result["ready_agents"]),
            "cycle_duration_seconds": (self.clock.now() - cycle_start).total_seconds(),
        })

        if self.scheduler.pipeline_complete():
            logger.info("✓ Pipeline complete")
            self.token.cancel("pipeline complete")

    def _snapshot_state(self) -> None:
        self.store.put_json(STATE_KEY, {
            "timestamp": self.clock.now().isoformat(),
            "cycle_count": self.cycle_count,
            "uptime": self._format_duration(self.clock.now() - self.start_time),
            "completed_phases": self.completed_phases,
            "announced_ready": sorted(self.announced_ready),
            "stale_agents": sorted(self.stale_agents),
            "escalations": self.escalations,
        })

    def _format_duration(self, duration: timedelta) -> str:
        """Format timedelta as e.g. ``2h 15m 30s``."""
        total_seconds = int(duration.total_seconds())
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60

        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"

    def _shutdown(self) -> None:
        uptime = self._format_duration(self.clock.now() - self.start_time)
        logger.info("=" * 80)
        logger.info("ORCHESTRATOR SHUTTING DOWN")
        logger.info(f"Total cycles: {self.cycle_count}")
        logger.info(f"Total uptime: {uptime}")
        logger.info("=" * 80)

        dashboard = self.monitor.get_dashboard(self.clock.now())
        dashboard["finished"] = utc_now().isoformat()
        self.store.put_json(FINAL_DASHBOARD_KEY, dashboard)

        self._emit_event(EventType.ORCHESTRATOR_SHUTDOWN, payload={
            "total_cycles": self.cycle_count,
            "uptime": uptime,
            "pipeline_complete": self.scheduler.pipeline_complete(),
            "reason": self.token.reason or "max cycles",
        })
