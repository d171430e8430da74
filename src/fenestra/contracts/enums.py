"""All status codes, states and kinds used across subsystem boundaries.

Values are stored verbatim in the ledger database. Loading an unknown value
crashes - the ledger is our data, and bad data there is a bug, not input.
"""

from enum import StrEnum


class WindowState(StrEnum):
    """Lifecycle state of a window.

    Stored in database (windows.state, window_events.from_state/to_state).

    FAILED is the mid-sequence state after a transient failure while a retry
    is still planned. FAILED_EXHAUSTED is terminal: nothing will retry it
    automatically, only a manual rerun brings it back to PENDING.
    """

    PENDING = "pending"
    WAITING_ON_DEPENDENCY = "waiting_on_dependency"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FAILED_EXHAUSTED = "failed_exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (WindowState.SUCCEEDED, WindowState.FAILED_EXHAUSTED)


# States a window can be dispatched from (subject to dependencies and slots)
DISPATCHABLE_STATES: frozenset[WindowState] = frozenset(
    {WindowState.PENDING, WindowState.WAITING_ON_DEPENDENCY, WindowState.FAILED}
)

# States the retention purge may delete
PURGEABLE_STATES: frozenset[WindowState] = frozenset({WindowState.SUCCEEDED, WindowState.FAILED_EXHAUSTED})


class ErrorClass(StrEnum):
    """Classification of a failed attempt.

    Stored in database (attempts.error_class, windows.last_error_class).

    TRANSIENT and PERMANENT come from the unit of work's classifier.
    CIRCUIT_OPEN and DEPENDENCY_FAILED are synthesized by the engine.
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    DEPENDENCY_FAILED = "dependency_failed"


class AttemptOutcome(StrEnum):
    """Outcome of a single attempt.

    Stored in database (attempts.outcome).
    """

    SUCCEEDED = "succeeded"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    INTERRUPTED = "interrupted"  # Process stopped mid-attempt, found on recovery


class CircuitState(StrEnum):
    """Circuit breaker state.

    Stored in database (circuit_breakers.state).
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class DependencyStatus(StrEnum):
    """Result of resolving a window's dependencies."""

    SATISFIED = "satisfied"
    BLOCKED = "blocked"
    FAILED = "failed"


class TransitionReason(StrEnum):
    """Why a window changed state.

    Stored in database (window_events.reason).
    """

    CREATED = "created"
    DISPATCHED = "dispatched"
    DEPENDENCY_WAIT = "dependency_wait"
    DEPENDENCY_READY = "dependency_ready"
    DEPENDENCY_FAILED = "dependency_failed"
    ATTEMPT_SUCCEEDED = "attempt_succeeded"
    ATTEMPT_FAILED = "attempt_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRIES_EXHAUSTED = "retries_exhausted"
    PERMANENT_ERROR = "permanent_error"
    CIRCUIT_REJECTED = "circuit_rejected"
    MANUAL_RERUN = "manual_rerun"
    RECOVERED = "recovered"
    EXECUTION_ERROR = "execution_error"


class MergeAction(StrEnum):
    """Upsert merge decision for one incoming record."""

    INSERT = "insert"
    UPDATE = "update"
    IGNORE = "ignore"


class FanOutStatus(StrEnum):
    """Aggregate status of a ForEach fan-out."""

    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"
    EMPTY = "empty"


class BackpressureMode(StrEnum):
    """What NotificationManager does when its queue is full."""

    BLOCK = "block"
    DROP = "drop"
