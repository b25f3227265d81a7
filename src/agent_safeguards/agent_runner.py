"""
Bounded-retry agent runner.

Drives one agent's build-test-fix loop as an explicit state machine:

    pending -> running -> success | retry | exhausted

The restart counter lives in the shared store next to the status record, so
a restarted process continues the same budget instead of starting over. Once
the budget is spent the runner stays alive in maintenance (exhausted), keeps
its status fresh and makes no further external calls.
"""

import logging
import os
from pathlib import Path
from typing import Callable, Optional

from .coordination import StatusCoordinator
from .exceptions import AgentTimeoutError
from .models import Agent, RunState, StatusRecord
from .scheduler import PhaseScheduler
from .tasks import CancellationToken, Clock, PeriodicTask
from .verification import TIMEOUT_RETURNCODE, CommandTestRunner, TestOutcome, run_command

logger = logging.getLogger(__name__)

__all__ = ["CommandAgentInvoker", "AgentRunner", "default_prompt"]


class CommandAgentInvoker:
    """Invokes the autonomous coding agent: prompt on stdin, output returned."""

    def __init__(self, command: str, workspace: Path, timeout: float = 1800):
        self.command = command
        self.workspace = Path(workspace)
        self.timeout = timeout

    def invoke(self, prompt: str) -> str:
        """
        Raises:
            AgentTimeoutError: If the agent does not finish within the timeout.
        """
        result = run_command(self.command, self.workspace, timeout=self.timeout, input_text=prompt)
        if result.returncode == TIMEOUT_RETURNCODE:
            raise AgentTimeoutError(
                f"Agent command timed out after {self.timeout}s", timeout=self.timeout
            )
        if result.returncode != 0:
            logger.warning(f"⚠ Agent command exited with {result.returncode}")
        return result.stdout or ""


def default_prompt(agent: Agent, attempt: int, last: Optional[TestOutcome], target: float) -> str:
    lines = [
        f"You are agent {agent.name} in phase {agent.phase}.",
        f"Attempt {attempt} of {agent.max_restarts}.",
        f"Goal: test pass rate of at least {target:.0f}%.",
    ]
    if last is not None:
        lines.append(f"Last run: {last.passed}/{last.total} passing, {last.failed} failing.")
    if agent.scope:
        lines.append(f"Only create or modify files matching: {', '.join(agent.scope)}")
    return "\n".join(lines)


class AgentRunner:
    """
    Runs one agent under a restart budget.

    Args:
        agent: The agent definition (carries ``max_restarts``)
        coordinator: Shared status, handoff and counter access
        scheduler: Decides whether the agent's dependencies are met
        test_runner: ``run() -> TestOutcome``
        invoker: ``invoke(prompt) -> str``; None runs tests only
        target_pass_rate: Pass percentage that counts as success
        prompt_builder: ``(agent, attempt, last_outcome, target) -> str``
    """

    def __init__(
        self,
        agent: Agent,
        coordinator: StatusCoordinator,
        scheduler: PhaseScheduler,
        test_runner: CommandTestRunner,
        invoker: Optional[CommandAgentInvoker] = None,
        target_pass_rate: float = 85.0,
        prompt_builder: Callable[[Agent, int, Optional[TestOutcome], float], str] = default_prompt,
    ):
        self.agent = agent
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.test_runner = test_runner
        self.invoker = invoker
        self.target_pass_rate = target_pass_rate
        self.prompt_builder = prompt_builder
        self.last_outcome: Optional[TestOutcome] = None

    @property
    def state(self) -> RunState:
        return RunState(self.coordinator.read_restart_counter(self.agent.name)["state"])

    @property
    def attempts(self) -> int:
        return self.coordinator.read_restart_counter(self.agent.name)["count"]

    def _write_status(self, state: RunState, task: str) -> None:
        outcome = self.last_outcome
        self.coordinator.write_status(self.agent.name, StatusRecord(
            phase=self.agent.phase,
            tests_passing=outcome.passed if outcome else 0,
            tests_total=outcome.total if outcome else 0,
            current_task=task,
            state=state.value,
            pid=os.getpid(),
        ))

    def _set_state(self, count: int, state: RunState, task: str) -> RunState:
        self.coordinator.write_restart_counter(self.agent.name, count, state.value)
        self._write_status(state, task)
        return state

    def _enter_maintenance(self, count: int) -> RunState:
        """Budget spent: hand off if good enough, otherwise leave a blocker."""
        name = self.agent.name
        record = self.coordinator.find_status(name)
        pass_rate = record.pass_rate if record else 0.0
        if pass_rate >= self.target_pass_rate:
            self.coordinator.mark_handoff(
                name, f"{name} entered maintenance at {pass_rate:.0f}% pass rate"
            )
            logger.info(f"✓ {name} exhausted its budget at {pass_rate:.0f}%; handoff written")
        else:
            self.coordinator.report_blocker(
                name,
                f"{name}-incomplete: restart budget of {self.agent.max_restarts} exhausted "
                f"at {pass_rate:.0f}% pass rate",
                critical=True,
            )
            logger.error(f"✗ {name} exhausted its budget at {pass_rate:.0f}%; blocker written")
        return self._set_state(count, RunState.EXHAUSTED, "maintenance: restart budget exhausted")

    def step(self) -> RunState:
        """Advance the state machine by one attempt."""
        name = self.agent.name
        counter = self.coordinator.read_restart_counter(name)
        count = counter["count"]
        state = RunState(counter["state"])

        if state is RunState.SUCCESS:
            return state
        if state is RunState.EXHAUSTED:
            # Heartbeat only, keeps the status fresh for observability
            self._write_status(state, "maintenance: restart budget exhausted")
            return state

        if not self.scheduler.is_ready(name):
            missing = ", ".join(self.scheduler.unmet_dependencies(name))
            return self._set_state(count, RunState.PENDING, f"waiting for {missing}")

        if count >= self.agent.max_restarts:
            return self._enter_maintenance(count)

        attempt = count + 1
        self._set_state(attempt, RunState.RUNNING, f"attempt {attempt}/{self.agent.max_restarts}")
        logger.info(f"{name}: attempt {attempt}/{self.agent.max_restarts}")

        try:
            if self.invoker is not None:
                self.invoker.invoke(
                    self.prompt_builder(self.agent, attempt, self.last_outcome, self.target_pass_rate)
                )
            outcome = self.test_runner.run()
        except AgentTimeoutError as e:
            logger.error(f"✗ {name} attempt {attempt} timed out: {e}")
            return self._set_state(attempt, RunState.RETRY, f"attempt {attempt} timed out")

        self.last_outcome = outcome
        if outcome.timed_out:
            logger.error(f"✗ {name} attempt {attempt}: test command timed out")
            return self._set_state(attempt, RunState.RETRY, f"attempt {attempt} tests timed out")

        if outcome.total > 0 and outcome.pass_rate >= self.target_pass_rate:
            self.coordinator.mark_handoff(
                name, f"{name} complete: {outcome.passed}/{outcome.total} tests passing"
            )
            logger.info(f"✓ {name} reached {outcome.pass_rate:.0f}% on attempt {attempt}")
            return self._set_state(attempt, RunState.SUCCESS, "complete")

        logger.warning(
            f"⚠ {name} attempt {attempt}: {outcome.passed}/{outcome.total} passing "
            f"(target {self.target_pass_rate:.0f}%)"
        )
        return self._set_state(attempt, RunState.RETRY, f"attempt {attempt} below target")

    def reset(self) -> None:
        """Fresh start: clear the restart counter."""
        self.coordinator.reset_restart_counter(self.agent.name)

    def run(self, interval: float = 30.0, clock: Optional[Clock] = None,
            token: Optional[CancellationToken] = None, max_cycles: Optional[int] = None) -> RunState:
        """Step until success or cancellation; an exhausted agent keeps idling."""
        token = token or CancellationToken()

        def action(cycle: int) -> None:
            if self.step() is RunState.SUCCESS:
                token.cancel("agent complete")

        PeriodicTask(
            name=f"agent[{self.agent.name}]",
            interval=interval,
            action=action,
            clock=clock,
            token=token,
        ).run(max_cycles=max_cycles)
        return self.state
