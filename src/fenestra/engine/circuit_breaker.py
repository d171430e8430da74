# src/fenestra/engine/circuit_breaker.py
"""Per-service circuit breakers.

State machine:
    CLOSED --(consecutive failures >= threshold)--> OPEN
    OPEN --(now >= next_probe_at, next call)--> HALF_OPEN (one probe admitted)
    HALF_OPEN --(probe succeeds)--> CLOSED
    HALF_OPEN --(probe fails)--> OPEN, next_probe_at = now + reset interval

The reset interval is constant: repeated opens do not grow it, so recovery
time stays bounded.

Each breaker guards its record with its own lock. The registry's lock is
only taken to create a breaker, never around a call, so one slow service
does not serialize the others.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from fenestra.contracts import (
    CircuitBreakerRecord,
    CircuitOpened,
    CircuitOpenError,
    CircuitState,
    NotificationSink,
    NullNotificationSink,
)
from fenestra.core.clock import DEFAULT_CLOCK, Clock

if TYPE_CHECKING:
    from fenestra.core.config import CircuitBreakerSettings
    from fenestra.core.ledger import RunLedger

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """Circuit breaker for one service key.

    Example:
        breaker = CircuitBreaker("crm_api", failure_threshold=5, reset_interval=timedelta(minutes=1))

        breaker.before_call()  # Raises CircuitOpenError when open
        try:
            result = call_crm()
        except Exception:
            breaker.after_call(succeeded=False)
            raise
        breaker.after_call(succeeded=True)
    """

    def __init__(
        self,
        service_key: str,
        *,
        failure_threshold: int,
        reset_interval: timedelta,
        clock: Clock | None = None,
        record: CircuitBreakerRecord | None = None,
        persist: Callable[[CircuitBreakerRecord], None] | None = None,
        on_open: Callable[[CircuitOpened], None] | None = None,
    ) -> None:
        """Initialize breaker.

        Args:
            service_key: Service this breaker protects
            failure_threshold: Consecutive failures that open the circuit
            reset_interval: How long an open circuit rejects before a probe
            clock: Time source (default: system clock)
            record: Persisted state to resume from (default: CLOSED)
            persist: Called with a copy of the record after every change
            on_open: Called with a CircuitOpened event on every transition to OPEN
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if reset_interval <= timedelta(0):
            raise ValueError("reset_interval must be positive")
        self._service_key = service_key
        self._failure_threshold = failure_threshold
        self._reset_interval = reset_interval
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._record = replace(record) if record is not None else CircuitBreakerRecord(service_key=service_key)
        self._persist = persist
        self._on_open = on_open
        # Not persisted: after a restart a HALF_OPEN circuit admits a fresh probe
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @property
    def service_key(self) -> str:
        return self._service_key

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._record.state

    def snapshot(self) -> CircuitBreakerRecord:
        """Copy of the current record."""
        with self._lock:
            return replace(self._record)

    def configure(self, *, failure_threshold: int, reset_interval: timedelta) -> None:
        """Apply new thresholds on config reload. Current state is kept."""
        with self._lock:
            self._failure_threshold = failure_threshold
            self._reset_interval = reset_interval

    def before_call(self) -> None:
        """Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is OPEN and not yet due for a probe,
                or HALF_OPEN with the probe already in flight
        """
        with self._lock:
            record = self._record
            if record.state == CircuitState.CLOSED:
                return
            now = self._clock.now()
            if record.state == CircuitState.OPEN:
                assert record.next_probe_at is not None, "OPEN circuit without next_probe_at"
                if now < record.next_probe_at:
                    raise CircuitOpenError(self._service_key, record.next_probe_at)
                record.state = CircuitState.HALF_OPEN
                self._save()
                self._probe_in_flight = True
                logger.info("circuit_half_open", service_key=self._service_key)
                return
            # HALF_OPEN: exactly one probe at a time
            if self._probe_in_flight:
                raise CircuitOpenError(self._service_key, None)
            self._probe_in_flight = True

    def after_call(self, *, succeeded: bool) -> None:
        """Report the outcome of an admitted call."""
        event: CircuitOpened | None = None
        with self._lock:
            record = self._record
            if succeeded:
                if record.state == CircuitState.OPEN:
                    # Late result of a call admitted before the circuit opened
                    return
                if record.state == CircuitState.HALF_OPEN:
                    logger.info("circuit_closed", service_key=self._service_key)
                changed = record.state != CircuitState.CLOSED or record.consecutive_failures != 0
                record.state = CircuitState.CLOSED
                record.consecutive_failures = 0
                record.opened_at = None
                record.next_probe_at = None
                self._probe_in_flight = False
                if changed:
                    self._save()
                return

            record.consecutive_failures += 1
            if record.state == CircuitState.HALF_OPEN:
                event = self._trip(reopened=True)
            elif record.state == CircuitState.CLOSED and record.consecutive_failures >= self._failure_threshold:
                event = self._trip(reopened=False)
            self._save()

        # Outside the lock: callbacks must never hold up other callers
        if event is not None and self._on_open is not None:
            self._on_open(event)

    def release(self) -> None:
        """Give back an admitted call that ended without a service outcome.

        Used when the attempt failed on our side (e.g. a ledger write) before
        the service was called or its result recorded. Nothing is counted; a
        HALF_OPEN circuit admits the next caller as its trial call.
        """
        with self._lock:
            self._probe_in_flight = False

    def _trip(self, *, reopened: bool) -> CircuitOpened:
        now = self._clock.now()
        record = self._record
        record.state = CircuitState.OPEN
        record.opened_at = now
        record.next_probe_at = now + self._reset_interval
        self._probe_in_flight = False
        logger.warning(
            "circuit_opened",
            service_key=self._service_key,
            consecutive_failures=record.consecutive_failures,
            next_probe_at=record.next_probe_at.isoformat(),
            reopened=reopened,
        )
        return CircuitOpened(
            timestamp=now,
            service_key=self._service_key,
            consecutive_failures=record.consecutive_failures,
            next_probe_at=record.next_probe_at,
            reopened=reopened,
        )

    def _save(self) -> None:
        if self._persist is not None:
            self._persist(replace(self._record))


class NoOpBreaker:
    """Breaker used when circuit breaking is disabled. Admits everything."""

    def __init__(self, service_key: str) -> None:
        self._service_key = service_key

    @property
    def service_key(self) -> str:
        return self._service_key

    @property
    def state(self) -> CircuitState:
        return CircuitState.CLOSED

    def before_call(self) -> None:
        """No-op admit (always succeeds)."""

    def after_call(self, *, succeeded: bool) -> None:
        """No-op outcome report."""

    def release(self) -> None:
        """No-op release."""


class CircuitBreakerRegistry:
    """Registry that manages circuit breakers per service key.

    Creates breakers on demand from configuration, resuming persisted state
    from the ledger when one is given. Thread-safe for concurrent access.

    Example:
        registry = CircuitBreakerRegistry(settings.circuit_breaker, ledger=ledger, notifications=manager)

        breaker = registry.get_breaker("crm_api")
        breaker.before_call()
    """

    def __init__(
        self,
        settings: CircuitBreakerSettings,
        *,
        clock: Clock | None = None,
        ledger: RunLedger | None = None,
        notifications: NotificationSink | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._ledger = ledger
        self._notifications: NotificationSink = notifications if notifications is not None else NullNotificationSink()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_breaker(self, service_key: str) -> CircuitBreaker | NoOpBreaker:
        """Get or create the breaker for a service.

        Returns:
            CircuitBreaker (or NoOpBreaker if disabled)
        """
        if not self._settings.enabled:
            return NoOpBreaker(service_key)

        with self._lock:
            if service_key not in self._breakers:
                service_config = self._settings.get_service_config(service_key)
                record = self._ledger.load_circuit(service_key) if self._ledger is not None else None
                self._breakers[service_key] = CircuitBreaker(
                    service_key,
                    failure_threshold=service_config.failure_threshold,
                    reset_interval=timedelta(seconds=service_config.reset_seconds),
                    clock=self._clock,
                    record=record,
                    persist=self._ledger.save_circuit if self._ledger is not None else None,
                    on_open=self._notifications.notify,
                )
            return self._breakers[service_key]

    def reconfigure(self, settings: CircuitBreakerSettings) -> None:
        """Apply reloaded settings. Existing breakers keep their state."""
        with self._lock:
            self._settings = settings
            for service_key, breaker in self._breakers.items():
                service_config = settings.get_service_config(service_key)
                breaker.configure(
                    failure_threshold=service_config.failure_threshold,
                    reset_interval=timedelta(seconds=service_config.reset_seconds),
                )

    def snapshot(self) -> list[CircuitBreakerRecord]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.snapshot() for b in breakers]
