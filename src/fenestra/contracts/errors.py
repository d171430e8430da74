"""Exception types that cross subsystem boundaries.

Unit-of-work errors carry their ErrorClass so the retry controller can decide
without guessing. Engine-synthesized errors (circuit open, dependency failed)
are distinct types so callers can tell them apart from anything a unit of
work raised.
"""

from __future__ import annotations

from datetime import datetime
from typing import TypedDict

from fenestra.contracts.enums import ErrorClass, WindowState


class ErrorDetail(TypedDict):
    """Schema for error payloads recorded in the ledger."""

    exception: str  # String representation of the exception
    type: str  # Exception class name (e.g., "TimeoutError")
    error_class: str  # ErrorClass value


class UnitOfWorkError(Exception):
    """Base for errors raised by a unit of work with an explicit class."""

    error_class: ErrorClass = ErrorClass.PERMANENT

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class TransientError(UnitOfWorkError):
    """Retryable failure: timeouts, 5xx responses, deadlocks."""

    error_class = ErrorClass.TRANSIENT


class PermanentError(UnitOfWorkError):
    """Non-retryable failure: auth failures, malformed input, validation errors."""

    error_class = ErrorClass.PERMANENT


class CircuitOpenError(Exception):
    """Raised by the circuit breaker when a call to an open circuit is rejected.

    Attributes:
        service_key: Service whose circuit is open
        next_probe_at: When the circuit will admit a probe call
    """

    def __init__(self, service_key: str, next_probe_at: datetime | None) -> None:
        self.service_key = service_key
        self.next_probe_at = next_probe_at
        when = next_probe_at.isoformat() if next_probe_at is not None else "after the in-flight probe"
        super().__init__(f"Circuit for service '{service_key}' is open; next probe {when}")


class DependencyFailedError(Exception):
    """A window's dependency reached FAILED_EXHAUSTED, so the window never runs."""

    def __init__(self, trigger_id: str, window_start: datetime, window_end: datetime) -> None:
        self.trigger_id = trigger_id
        self.window_start = window_start
        self.window_end = window_end
        super().__init__(
            f"Dependency window {trigger_id} [{window_start.isoformat()}, {window_end.isoformat()}) failed permanently"
        )


class MaxAttemptsExhausted(Exception):
    """Raised when a window used up its retry budget on transient failures."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max attempts ({attempts}) exhausted: {last_error}")


class RerunRejectedError(Exception):
    """Manual rerun refused because the window is currently RUNNING."""

    def __init__(self, trigger_id: str, window_start: datetime, state: WindowState) -> None:
        self.trigger_id = trigger_id
        self.window_start = window_start
        self.state = state
        super().__init__(f"Cannot rerun {trigger_id} window starting {window_start.isoformat()}: window is {state.value}")


class WindowAlignmentError(ValueError):
    """Requested bounds do not match a window of the trigger's grid."""


class WindowConflictError(Exception):
    """A compare-and-set on a window lost against a concurrent writer."""

    def __init__(self, trigger_id: str, window_start: datetime, expected: str) -> None:
        self.trigger_id = trigger_id
        self.window_start = window_start
        super().__init__(f"Window {trigger_id}@{window_start.isoformat()} changed concurrently (expected {expected})")


class UnknownTriggerError(KeyError):
    """Referenced trigger id is not part of the active configuration."""


class ConfigReloadError(Exception):
    """A configuration reload was rejected; the previous snapshot stays active."""
