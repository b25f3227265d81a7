"""Tests for the orchestrator loop."""

from datetime import timedelta

import pytest

from agent_safeguards.models import StatusRecord
from agent_safeguards.orchestrator import (
    EVENTS_KEY,
    FINAL_DASHBOARD_KEY,
    STATE_KEY,
    OrchestratorLoop,
)


@pytest.fixture
def loop(scheduler, memory_store, fake_clock):
    return OrchestratorLoop(scheduler, memory_store, interval=30, clock=fake_clock)


def event_names(store):
    return [e["event"] for e in store.read_jsonl(EVENTS_KEY)]


class TestOrchestratorLoop:
    def test_stops_when_pipeline_completes(self, loop, coordinator, memory_store):
        for name in ("schema", "services", "hooks"):
            coordinator.mark_handoff(name)

        assert loop.run(max_cycles=10) == 1
        assert loop.token.reason == "pipeline complete"
        assert loop.completed_phases == ["RED", "GREEN", "REFACTOR"]
        events = event_names(memory_store)
        assert events[0] == "orchestrator_started"
        assert events.count("phase_complete") == 3
        assert events[-1] == "orchestrator_shutdown"

    def test_ready_agents_announced_once(self, loop, memory_store, fake_clock):
        assert loop.run(max_cycles=3) == 3
        ready = [e for e in memory_store.read_jsonl(EVENTS_KEY) if e["event"] == "agent_ready"]
        assert [e["agent"] for e in ready] == ["schema"]
        assert fake_clock.waits == [30, 30]

    def test_newly_ready_agent_announced(self, loop, coordinator, memory_store):
        loop.run(max_cycles=1)
        coordinator.mark_handoff("schema")
        loop.run(max_cycles=1)
        assert loop.announced_ready == {"schema", "services"}

    def test_stale_agent_flagged_once(self, loop, coordinator, memory_store, fake_clock):
        coordinator.write_status("services", StatusRecord(
            phase="GREEN", last_update=fake_clock.now() - timedelta(seconds=400),
        ))
        loop.run(max_cycles=3)
        assert event_names(memory_store).count("agent_stale") == 1
        assert memory_store.get_json(STATE_KEY)["stale_agents"] == ["services"]

    def test_critical_blocker_escalated_once(self, loop, coordinator, memory_store):
        coordinator.report_blocker("hooks", "build broken", critical=True)
        loop.run(max_cycles=2)
        assert event_names(memory_store).count("escalation") == 1
        assert loop.escalations == ["hooks"]

    def test_shutdown_writes_final_dashboard(self, loop, memory_store):
        loop.run(max_cycles=2)
        dashboard = memory_store.get_json(FINAL_DASHBOARD_KEY)
        assert dashboard["pipeline_complete"] is False
        assert "finished" in dashboard
        shutdown = memory_store.read_jsonl(EVENTS_KEY)[-1]
        assert shutdown["reason"] == "max cycles"
        assert shutdown["total_cycles"] == 2

    def test_cancelled_before_start(self, loop, memory_store):
        loop.token.cancel("shutdown requested")
        assert loop.run() == 0
        assert event_names(memory_store)[-1] == "orchestrator_shutdown"

    def test_format_duration(self, loop):
        assert loop._format_duration(timedelta(seconds=8130)) == "2h 15m 30s"
        assert loop._format_duration(timedelta(seconds=75)) == "1m 15s"
        assert loop._format_duration(timedelta(seconds=5)) == "5s"
