# src/fenestra/core/clock.py
"""Clock abstraction for testable scheduling logic.

Window materialization, dispatch delays, retry backoff and circuit breaker
reset intervals all depend on "now". Production code uses SystemClock (the
default). Tests inject MockClock to control time advancement.

All wall-clock values are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for time-based scheduling decisions.

    Implementations:
    - SystemClock: Uses the system wall clock and time.sleep() (production)
    - MockClock: Returns controllable times, sleep() advances time (testing)
    """

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...

    def monotonic(self) -> float:
        """Return monotonic time in seconds, for elapsed-time measurement."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block the calling thread for ``seconds``."""
        ...

    def wait(self, event: threading.Event, seconds: float) -> bool:
        """Sleep up to ``seconds``, returning early (True) once ``event`` is set."""
        ...


class SystemClock:
    """Production clock backed by the system wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        return event.wait(seconds)


class MockClock:
    """Controllable clock for deterministic testing.

    sleep() advances the clock instead of blocking, so retry backoff runs
    instantly while timestamps in the ledger still move forward.

    Example:
        clock = MockClock(start=datetime(2026, 1, 1, 11, 15, tzinfo=UTC))
        scheduler = TriggerScheduler(trigger, ledger, ..., clock=clock)

        scheduler.tick()  # Materializes windows due at 11:15
        clock.advance(timedelta(hours=1))
        scheduler.tick()  # The 11:00 window is now due too
    """

    def __init__(self, start: datetime | None = None) -> None:
        """Initialize mock clock at a given time.

        Args:
            start: Initial time (default 2026-01-01T00:00Z). Naive values are read as UTC.
        """
        if start is None:
            start = datetime(2026, 1, 1, tzinfo=UTC)
        elif start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        self._current = start
        self._origin = start
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def monotonic(self) -> float:
        with self._lock:
            return (self._current - self._origin).total_seconds()

    def sleep(self, seconds: float) -> None:
        """Record the sleep and advance time by it."""
        with self._lock:
            self.sleeps.append(seconds)
        self.advance(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        """Advance by ``seconds`` unless ``event`` is already set."""
        if event.is_set():
            return True
        self.sleep(seconds)
        return event.is_set()

    def advance(self, amount: float | timedelta) -> None:
        """Advance mock time.

        Args:
            amount: Seconds or a timedelta (must be non-negative).

        Raises:
            ValueError: If amount is negative.
        """
        delta = amount if isinstance(amount, timedelta) else timedelta(seconds=amount)
        if delta < timedelta(0):
            raise ValueError(f"Cannot advance time by negative amount: {amount}")
        with self._lock:
            self._current += delta

    def set(self, value: datetime) -> None:
        """Set mock time to an absolute value.

        Note:
            Unlike advance(), this can move time backwards. Use with caution.
        """
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        with self._lock:
            self._current = value


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
