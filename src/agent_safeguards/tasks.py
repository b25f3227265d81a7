"""
Periodic Task Runner

Every monitor and the scheduler is an independent polling loop. Instead of
raw ``while True: ...; time.sleep(n)`` loops each one is a PeriodicTask:

- the wait between cycles goes through a Clock, so tests inject a FakeClock
  and run many cycles instantly
- a CancellationToken stops the loop between cycles; SIGINT/SIGTERM set it
- CriticalSection defers those signals while a rollback is in flight so a
  shutdown can never leave one half applied
"""

import logging
import signal
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .models import utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "CancellationToken",
    "Clock",
    "SystemClock",
    "FakeClock",
    "PeriodicTask",
    "install_signal_handlers",
    "CriticalSection",
]


class CancellationToken:
    """Cooperative stop flag shared by a loop and whoever wants it stopped."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``; returns True if cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))


class Clock(ABC):
    """Time source for loops and staleness checks."""

    @abstractmethod
    def now(self) -> datetime:
        pass

    @abstractmethod
    def wait(self, seconds: float, token: CancellationToken) -> bool:
        """Pause between cycles. Returns True if the token was cancelled."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return utc_now()

    def wait(self, seconds: float, token: CancellationToken) -> bool:
        return token.wait(seconds)


class FakeClock(Clock):
    """Deterministic clock: waiting advances time instantly."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or utc_now()
        self.waits: List[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)

    def wait(self, seconds: float, token: CancellationToken) -> bool:
        self.waits.append(seconds)
        self.advance(seconds)
        return token.cancelled


class PeriodicTask:
    """
    Run ``action(cycle)`` every ``interval`` seconds until cancelled.

    The action receives the 1-based cycle number. Exceptions from the action
    are logged and the loop continues on the next cycle; a failing check must
    not kill the monitor that reports on it.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[int], None],
        clock: Optional[Clock] = None,
        token: Optional[CancellationToken] = None,
        on_stop: Optional[Callable[[int], None]] = None,
    ):
        self.name = name
        self.interval = interval
        self.action = action
        self.clock = clock or SystemClock()
        self.token = token or CancellationToken()
        self.on_stop = on_stop
        self.cycle_count = 0
        self.failures = 0

    def run_once(self) -> bool:
        """Execute a single cycle. Returns False if the action raised."""
        self.cycle_count += 1
        try:
            self.action(self.cycle_count)
            return True
        except Exception as e:
            self.failures += 1
            logger.error(f"✗ {self.name} cycle {self.cycle_count} failed: {e}", exc_info=True)
            return False

    def run(self, max_cycles: Optional[int] = None) -> int:
        """
        Loop until the token is cancelled or ``max_cycles`` ran.

        Returns:
            Number of cycles executed
        """
        logger.info(f"{self.name} starting (interval {self.interval}s)")
        try:
            while not self.token.cancelled:
                self.run_once()
                if max_cycles is not None and self.cycle_count >= max_cycles:
                    break
                if self.clock.wait(self.interval, self.token):
                    break
        finally:
            logger.info(
                f"{self.name} stopped after {self.cycle_count} cycle(s)"
                + (f" ({self.token.reason})" if self.token.reason else "")
            )
            if self.on_stop is not None:
                self.on_stop(self.cycle_count)
        return self.cycle_count


def install_signal_handlers(token: CancellationToken) -> None:
    """Cancel ``token`` on SIGINT/SIGTERM. Only valid from the main thread."""

    def _handle_shutdown(signum, frame):
        logger.info(f"Shutdown signal received: {signum}")
        token.cancel(f"signal {signum}")

    signal.signal(signal.SIGINT, _handle_shutdown)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_shutdown)


class CriticalSection:
    """
    Context manager that holds SIGINT/SIGTERM until the block finishes.

    Signals received inside the block are replayed to the previous handlers on
    exit. Outside the main thread signal handlers cannot be changed, so the
    block simply runs.
    """

    SIGNALS = tuple(
        s for s in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)) if s
    )

    def __init__(self, label: str = "critical section"):
        self.label = label
        self.deferred: List[int] = []
        self._previous = {}
        self._active = False

    def __enter__(self) -> "CriticalSection":
        if threading.current_thread() is not threading.main_thread():
            return self
        for sig in self.SIGNALS:
            self._previous[sig] = signal.signal(sig, self._defer)
        self._active = True
        return self

    def _defer(self, signum, frame):
        logger.warning(f"⚠ Signal {signum} deferred until {self.label} completes")
        self.deferred.append(signum)

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._active:
            return
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._active = False
        for signum in self.deferred:
            handler = self._previous.get(signum)
            if callable(handler):
                handler(signum, None)
            elif handler == signal.SIG_DFL:
                signal.raise_signal(signum)
