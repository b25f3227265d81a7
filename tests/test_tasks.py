"""Tests for periodic tasks, clocks, cancellation and critical sections."""

import signal
import threading
from unittest import mock

import pytest

from agent_safeguards.tasks import (
    CancellationToken,
    Clock,
    CriticalSection,
    FakeClock,
    PeriodicTask,
    install_signal_handlers,
)


class TestPeriodicTask:
    """Tests for the polling loop."""

    def test_runs_max_cycles(self, fake_clock):
        seen = []
        task = PeriodicTask("t", 15, seen.append, clock=fake_clock)
        assert task.run(max_cycles=3) == 3
        assert seen == [1, 2, 3]
        assert fake_clock.waits == [15, 15]

    def test_cancel_from_action_stops_loop(self, fake_clock):
        token = CancellationToken()

        def action(cycle):
            if cycle == 2:
                token.cancel("done")

        task = PeriodicTask("t", 30, action, clock=fake_clock, token=token)
        assert task.run(max_cycles=10) == 2
        assert token.reason == "done"

    def test_failing_action_does_not_kill_loop(self, fake_clock):
        def action(cycle):
            if cycle == 1:
                raise RuntimeError("boom")

        task = PeriodicTask("t", 30, action, clock=fake_clock)
        assert task.run(max_cycles=3) == 3
        assert task.failures == 1

    def test_on_stop_called_with_cycle_count(self, fake_clock):
        stopped = []
        task = PeriodicTask("t", 30, lambda c: None, clock=fake_clock, on_stop=stopped.append)
        task.run(max_cycles=2)
        assert stopped == [2]

    def test_pre_cancelled_token_runs_nothing(self, fake_clock):
        token = CancellationToken()
        token.cancel()
        seen = []
        assert PeriodicTask("t", 30, seen.append, clock=fake_clock, token=token).run() == 0
        assert seen == []


class TestClocks:
    """Tests for the clock implementations."""

    def test_fake_clock_advances_on_wait(self, fake_clock):
        start = fake_clock.now()
        assert fake_clock.wait(45, CancellationToken()) is False
        assert (fake_clock.now() - start).total_seconds() == 45

    def test_token_wait_returns_when_cancelled(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()
        assert token.wait(5) is True
        assert token.cancelled

    def test_first_cancel_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    def test_clock_is_abstract(self):
        with pytest.raises(TypeError):
            Clock()

        class HalfClock(Clock):
            def now(self):
                return None

        with pytest.raises(TypeError):
            HalfClock()


class TestSignals:
    """Tests for shutdown signal handling."""

    def test_install_signal_handlers_cancels_token(self):
        token = CancellationToken()
        with mock.patch("agent_safeguards.tasks.signal.signal") as mock_signal:
            install_signal_handlers(token)
        handler = mock_signal.call_args_list[0][0][1]
        handler(signal.SIGTERM, None)
        assert token.cancelled

    def test_critical_section_defers_signal(self):
        received = []
        previous = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
        try:
            with CriticalSection("test") as section:
                signal.raise_signal(signal.SIGINT)
                assert received == []
                assert section.deferred == [signal.SIGINT]
            assert received == [signal.SIGINT]
        finally:
            signal.signal(signal.SIGINT, previous)

    def test_critical_section_off_main_thread_just_runs(self):
        results = []

        def work():
            with CriticalSection("worker") as section:
                results.append(section.deferred)

        thread = threading.Thread(target=work)
        thread.start()
        thread.join()
        assert results == [[]]
