# src/waypoint/engine/clock.py
"""Clock abstraction for testable timeout logic.

The watchdog and the interrupt escalator only ever measure elapsed time and
wait; both go through a Clock so tests can drive them deterministically.

Production code uses SystemClock (the default).
Tests inject MockClock, whose sleep() advances time instantly.
"""

from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for elapsed-time and timeout calculations.

    Implementations:
    - SystemClock: time.monotonic() and time.sleep() (production)
    - MockClock: controllable time, sleep() advances it (testing)
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds. Never goes backwards."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block for seconds (or pretend to)."""
        ...

    def wait_event(self, event: threading.Event, timeout: float) -> bool:
        """Wait until event is set or timeout elapses; True if it was set."""
        ...


class SystemClock:
    """Production clock using the system's monotonic clock.

    Immune to NTP and wall-clock changes, so a stage's elapsed time cannot
    jump when the system time is corrected.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def wait_event(self, event: threading.Event, timeout: float) -> bool:
        return event.wait(timeout)


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock(start=0.0)
        watchdog = Watchdog(max_duration_seconds=60, clock=clock)
        watchdog.start()

        clock.advance(61)
        assert watchdog.poll() == WatchdogVerdict.SOFT_TIMEOUT
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._current

    def sleep(self, seconds: float) -> None:
        """Record the sleep and advance time by it."""
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))

    def wait_event(self, event: threading.Event, timeout: float) -> bool:
        """Advance time by timeout, then give other threads a brief real chance to set event."""
        self.sleep(timeout)
        return event.wait(0.01)

    def advance(self, seconds: float) -> None:
        """Advance mock time.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
