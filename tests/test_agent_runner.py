"""Tests for the bounded-retry agent runner."""

from unittest import mock

import pytest

from agent_safeguards.agent_runner import AgentRunner, CommandAgentInvoker, default_prompt
from agent_safeguards.exceptions import AgentTimeoutError
from agent_safeguards.models import Agent, RunState
from agent_safeguards.verification import TestOutcome


def outcome(passed, total, timed_out=False):
    return TestOutcome(passed=passed, failed=total - passed, total=total, timed_out=timed_out)


@pytest.fixture
def fake_tests():
    runner = mock.Mock()
    runner.run.return_value = outcome(5, 10)
    return runner


@pytest.fixture
def fake_invoker():
    return mock.Mock()


def make_runner(scheduler, coordinator, fake_tests, fake_invoker, name="schema", max_restarts=5):
    agent = scheduler.pipeline.agents[name]
    if agent.max_restarts != max_restarts:
        agent = Agent(name=agent.name, phase=agent.phase, depends_on=agent.depends_on,
                      scope=agent.scope, max_restarts=max_restarts)
    return AgentRunner(agent, coordinator, scheduler, fake_tests, fake_invoker, target_pass_rate=85.0)


class TestBudget:
    """The restart budget bounds external calls."""

    def test_sixth_attempt_is_exhausted_without_calls(self, scheduler, coordinator, fake_tests, fake_invoker):
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker)
        states = [runner.step() for _ in range(5)]
        assert states == [RunState.RETRY] * 5
        assert fake_tests.run.call_count == 5
        assert fake_invoker.invoke.call_count == 5

        assert runner.step() is RunState.EXHAUSTED
        assert fake_tests.run.call_count == 5
        assert fake_invoker.invoke.call_count == 5

    def test_exhausted_stays_exhausted(self, scheduler, coordinator, fake_tests, fake_invoker):
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker, max_restarts=1)
        runner.step()
        runner.step()
        for _ in range(3):
            assert runner.step() is RunState.EXHAUSTED
        assert fake_tests.run.call_count == 1
        assert coordinator.read_status("schema").state == "exhausted"

    def test_exhausted_below_target_writes_critical_blocker(
        self, scheduler, coordinator, fake_tests, fake_invoker
    ):
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker, max_restarts=1)
        runner.step()
        runner.step()
        blockers = coordinator.list_blockers()
        assert blockers[0].agent == "schema"
        assert blockers[0].is_critical
        assert "schema-incomplete" in blockers[0].reason
        assert not coordinator.has_handoff("schema")

    def test_counter_survives_restart(self, scheduler, coordinator, fake_tests, fake_invoker):
        make_runner(scheduler, coordinator, fake_tests, fake_invoker, max_restarts=2).step()
        second = make_runner(scheduler, coordinator, fake_tests, fake_invoker, max_restarts=2)
        assert second.attempts == 1
        second.step()
        assert second.step() is RunState.EXHAUSTED
        assert fake_tests.run.call_count == 2

    def test_reset_gives_fresh_budget(self, scheduler, coordinator, fake_tests, fake_invoker):
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker, max_restarts=1)
        runner.step()
        runner.step()
        runner.reset()
        assert runner.attempts == 0
        assert runner.step() is RunState.RETRY


class TestTransitions:
    """State machine transitions."""

    def test_success_writes_handoff(self, scheduler, coordinator, fake_tests, fake_invoker):
        fake_tests.run.return_value = outcome(9, 10)
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker)
        assert runner.step() is RunState.SUCCESS
        assert coordinator.has_handoff("schema")
        assert "9/10" in coordinator.read_handoff("schema")
        assert runner.step() is RunState.SUCCESS
        assert fake_tests.run.call_count == 1

    def test_waits_for_dependencies_without_spending_budget(
        self, scheduler, coordinator, fake_tests, fake_invoker
    ):
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker, name="hooks")
        assert runner.step() is RunState.PENDING
        assert runner.attempts == 0
        assert "services" in coordinator.read_status("hooks").current_task
        fake_tests.run.assert_not_called()

    def test_agent_timeout_consumes_attempt(self, scheduler, coordinator, fake_tests, fake_invoker):
        fake_invoker.invoke.side_effect = AgentTimeoutError("too slow", timeout=1)
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker)
        assert runner.step() is RunState.RETRY
        assert runner.attempts == 1
        fake_tests.run.assert_not_called()

    def test_test_timeout_is_retry(self, scheduler, coordinator, fake_tests, fake_invoker):
        fake_tests.run.return_value = outcome(10, 10, timed_out=True)
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker)
        assert runner.step() is RunState.RETRY

    def test_zero_tests_is_not_success(self, scheduler, coordinator, fake_tests, fake_invoker):
        fake_tests.run.return_value = outcome(0, 0)
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker)
        assert runner.step() is RunState.RETRY

    def test_status_carries_pid_and_counts(self, scheduler, coordinator, fake_tests, fake_invoker):
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker)
        runner.step()
        record = coordinator.read_status("schema")
        assert record.tests_passing == 5
        assert record.tests_total == 10
        assert record.pid is not None

    def test_run_stops_on_success(self, scheduler, coordinator, fake_tests, fake_invoker, fake_clock):
        fake_tests.run.side_effect = [outcome(1, 10), outcome(10, 10)]
        runner = make_runner(scheduler, coordinator, fake_tests, fake_invoker)
        assert runner.run(interval=30, clock=fake_clock, max_cycles=10) is RunState.SUCCESS
        assert fake_clock.waits == [30]


class TestInvoker:
    def test_prompt_mentions_scope_and_last_run(self, three_agent_pipeline):
        prompt = default_prompt(three_agent_pipeline.agents["services"], 2, outcome(3, 10), 85.0)
        assert "Attempt 2 of 5" in prompt
        assert "3/10 passing" in prompt
        assert "src/services/**" in prompt

    def test_invoke_passes_prompt_on_stdin(self, tmp_path):
        assert CommandAgentInvoker("cat", tmp_path, timeout=10).invoke("hello") == "hello"

    def test_invoke_timeout_raises(self, tmp_path):
        with pytest.raises(AgentTimeoutError):
            CommandAgentInvoker("sleep 5", tmp_path, timeout=0.2).invoke("hello")
