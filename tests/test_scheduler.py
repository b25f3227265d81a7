"""Tests for the dependency/phase scheduler."""

from datetime import timedelta

import pytest

from agent_safeguards.config import PipelineConfig
from agent_safeguards.exceptions import ConfigurationError
from agent_safeguards.models import Agent, StatusRecord
from agent_safeguards.scheduler import AgentState, PhaseScheduler, phase_handoff_name
from agent_safeguards.tasks import CancellationToken


class TestReadiness:
    """An agent is ready iff every dependency has a handoff."""

    def test_root_agent_is_ready(self, scheduler):
        assert scheduler.is_ready("schema")
        assert scheduler.unmet_dependencies("schema") == []

    def test_schema_services_hooks_scenario(self, scheduler, coordinator):
        """Only the root is ready, then readiness walks down the chain."""
        assert scheduler.ready_agents() == ["schema"]

        coordinator.mark_handoff("schema")
        assert scheduler.is_ready("services")
        assert not scheduler.is_ready("hooks")
        assert scheduler.ready_agents() == ["services"]

        coordinator.mark_handoff("services")
        assert scheduler.is_ready("hooks")
        assert scheduler.ready_agents() == ["hooks"]

    def test_readiness_matches_handoffs_exhaustively(self, scheduler, coordinator, three_agent_pipeline):
        """For every subset of handoffs, ready == all dependencies handed off."""
        names = list(three_agent_pipeline.agents)
        for mask in range(1 << len(names)):
            done = {names[i] for i in range(len(names)) if mask & (1 << i)}
            for name in names:
                coordinator.store.delete(f"handoffs/{name}-complete.md")
            for name in done:
                coordinator.mark_handoff(name)
            for name, agent in three_agent_pipeline.agents.items():
                expected = all(dep in done for dep in agent.depends_on)
                assert scheduler.is_ready(name) == expected

    def test_unmet_dependencies(self, scheduler):
        assert scheduler.unmet_dependencies("hooks") == ["services"]

    def test_unknown_agent(self, scheduler):
        with pytest.raises(ConfigurationError):
            scheduler.is_ready("ghost")

    def test_phase_dependency(self, coordinator, fake_clock):
        pipeline = PipelineConfig(
            phases=["RED", "GREEN"],
            agents={
                "tests": Agent(name="tests", phase="RED"),
                "impl": Agent(name="impl", phase="GREEN", depends_on=("RED",)),
            },
        )
        scheduler = PhaseScheduler(pipeline, coordinator, fake_clock)
        assert not scheduler.is_ready("impl")
        coordinator.mark_handoff("tests")
        assert not scheduler.is_ready("impl")
        scheduler.tick()
        assert coordinator.has_handoff(phase_handoff_name("RED"))
        assert scheduler.is_ready("impl")


class TestPhaseCompletion:
    """Phase completion and synthesized phase handoffs."""

    def test_phase_incomplete_until_all_agents_hand_off(self, scheduler, coordinator):
        coordinator.mark_handoff("schema")
        coordinator.mark_handoff("services")
        assert not scheduler.is_phase_complete("GREEN")
        coordinator.mark_handoff("hooks")
        assert scheduler.is_phase_complete("GREEN")

    def test_empty_phase_follows_earlier_phases(self, scheduler, coordinator):
        assert scheduler.is_phase_complete("RED")
        assert not scheduler.is_phase_complete("REFACTOR")
        for name in ("schema", "services", "hooks"):
            coordinator.mark_handoff(name)
        assert scheduler.is_phase_complete("REFACTOR")

    def test_tick_synthesizes_each_phase_once(self, scheduler, coordinator):
        assert scheduler.tick()["completed_phases"] == ["RED"]
        for name in ("schema", "services", "hooks"):
            coordinator.mark_handoff(name)
        assert scheduler.tick()["completed_phases"] == ["GREEN", "REFACTOR"]
        assert scheduler.tick()["completed_phases"] == []
        summary = coordinator.read_handoff("green")
        assert "- schema" in summary
        assert "Next phase: REFACTOR" in summary

    def test_completion_is_monotonic(self, scheduler, coordinator):
        """Once complete, a phase stays complete even if an agent marker vanishes."""
        for name in ("schema", "services", "hooks"):
            coordinator.mark_handoff(name)
        scheduler.tick()
        coordinator.store.delete("handoffs/hooks-complete.md")
        assert scheduler.is_phase_complete("GREEN")

    def test_pipeline_complete(self, scheduler, coordinator):
        assert not scheduler.pipeline_complete()
        for name in ("schema", "services", "hooks"):
            coordinator.mark_handoff(name)
        scheduler.tick()
        assert scheduler.pipeline_complete()

    def test_next_phase(self, scheduler):
        assert scheduler.next_phase("RED") == "GREEN"
        assert scheduler.next_phase("REFACTOR") is None

    def test_unknown_phase(self, scheduler):
        with pytest.raises(ConfigurationError):
            scheduler.is_phase_complete("DEPLOY")


class TestDashboard:
    """Agent states and per-phase counts."""

    def test_agent_states(self, scheduler, coordinator, fake_clock):
        coordinator.mark_handoff("schema")
        coordinator.write_status("services", StatusRecord(phase="GREEN", last_update=fake_clock.now()))
        coordinator.write_status(
            "hooks", StatusRecord(phase="GREEN", last_update=fake_clock.now() - timedelta(seconds=600))
        )
        assert scheduler.agent_state("schema") == AgentState.COMPLETE
        assert scheduler.agent_state("services") == AgentState.ACTIVE
        assert scheduler.agent_state("hooks") == AgentState.STALE

    def test_dashboard_counts(self, scheduler, coordinator, fake_clock):
        coordinator.mark_handoff("schema")
        coordinator.write_status("services", StatusRecord(phase="GREEN", last_update=fake_clock.now()))
        coordinator.report_blocker("hooks", "waiting on services")
        dashboard = scheduler.dashboard()
        green = next(p for p in dashboard["phases"] if p["phase"] == "GREEN")
        assert green["complete"] == 1
        assert green["active"] == 1
        assert green["not_started"] == 1
        assert green["total"] == 3
        assert dashboard["ready_agents"] == ["services"]
        assert dashboard["blockers"][0]["agent"] == "hooks"
        assert dashboard["pipeline_complete"] is False


class TestWaitUntilReady:
    """Dependency wait for agent processes."""

    def test_returns_immediately_when_ready(self, scheduler, fake_clock):
        assert scheduler.wait_until_ready("schema", timeout=60)
        assert fake_clock.waits == []

    def test_times_out(self, scheduler, fake_clock):
        assert not scheduler.wait_until_ready("hooks", timeout=90, poll_interval=30)
        assert sum(fake_clock.waits) == 90

    def test_cancelled(self, scheduler):
        token = CancellationToken()
        token.cancel("shutdown")
        assert not scheduler.wait_until_ready("hooks", timeout=60, token=token)
