"""Window, attempt and state records.

These are the domain objects the ledger repositories produce. Fields map
one-to-one onto ledger columns; conversion from strings to enums happens in
the repository layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeAlias

from fenestra.contracts.enums import (
    AttemptOutcome,
    CircuitState,
    ErrorClass,
    TransitionReason,
    WindowState,
)

# A RunVariableBag value: string, int, bool, or a list of those
VariableValue: TypeAlias = str | int | bool | list[Any]
RunVariableBag: TypeAlias = dict[str, VariableValue]


@dataclass(frozen=True, slots=True)
class WindowBounds:
    """A half-open interval [start, end).

    A timestamp equal to ``end`` belongs to the next window, never this one.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Window end {self.end.isoformat()} must be after start {self.start.isoformat()}")

    @property
    def size(self) -> timedelta:
        return self.end - self.start

    def contains(self, ts: datetime) -> bool:
        """Whether ``ts`` falls inside [start, end)."""
        return self.start <= ts < self.end

    def within(self, lo: datetime, hi: datetime) -> bool:
        """Whether this window lies fully inside [lo, hi)."""
        return lo <= self.start and self.end <= hi


@dataclass(frozen=True, slots=True)
class Window:
    """A window of a trigger as recorded in the ledger."""

    trigger_id: str
    window_start: datetime
    window_end: datetime
    state: WindowState
    attempt: int
    version: int
    created_at: datetime
    updated_at: datetime
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    last_error_class: ErrorClass | None = None
    dispatched_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def bounds(self) -> WindowBounds:
        return WindowBounds(self.window_start, self.window_end)

    def contains(self, ts: datetime) -> bool:
        return self.window_start <= ts < self.window_end


@dataclass(frozen=True, slots=True)
class Attempt:
    """One execution attempt of a window (append-only ledger entry)."""

    attempt_id: str
    trigger_id: str
    window_start: datetime
    attempt_number: int
    started_at: datetime
    outcome: AttemptOutcome | None = None
    finished_at: datetime | None = None
    duration_ms: float | None = None
    error_class: ErrorClass | None = None
    error_json: str | None = None
    inputs_json: str | None = None
    outputs_json: str | None = None
    next_retry_at: datetime | None = None
    service_key: str | None = None


@dataclass(frozen=True, slots=True)
class WindowEvent:
    """A recorded state transition of a window (append-only)."""

    event_id: int
    trigger_id: str
    window_start: datetime
    from_state: WindowState | None
    to_state: WindowState
    reason: TransitionReason
    recorded_at: datetime
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class WatermarkRecord:
    """Highest value durably processed for a source key."""

    source_key: str
    value: str
    updated_at: datetime
    version: int
    trigger_id: str | None = None
    window_start: datetime | None = None


@dataclass(slots=True)
class CircuitBreakerRecord:
    """Mutable circuit state for one service key.

    Mutated only while holding the breaker's own lock.
    """

    service_key: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: datetime | None = None
    next_probe_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ConfigSnapshotRecord:
    """A configuration snapshot as recorded in the ledger."""

    version: int
    config_hash: str
    settings_json: str
    loaded_at: datetime


@dataclass(frozen=True, slots=True)
class AttemptContext:
    """Run-scoped context handed to a unit of work for one attempt.

    ``attempt_number`` is 1-indexed: the first try is attempt 1.
    """

    trigger_id: str
    window: WindowBounds
    attempt_number: int
    service_key: str
    started_at: datetime
    watermark: datetime | None = None  # current high-water mark when the unit is incremental


@dataclass(frozen=True, slots=True)
class WorkResult:
    """What a unit of work reports back for one attempt.

    Use the factories instead of constructing directly.
    """

    succeeded: bool
    error_class: ErrorClass | None = None
    message: str | None = None
    outputs: dict[str, VariableValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.succeeded and self.error_class is not None:
            raise ValueError("A successful WorkResult cannot carry an error_class")
        if not self.succeeded and self.error_class is None:
            raise ValueError("A failed WorkResult requires an error_class")

    @classmethod
    def success(cls, outputs: dict[str, VariableValue] | None = None) -> WorkResult:
        return cls(succeeded=True, outputs=dict(outputs or {}))

    @classmethod
    def failure(cls, error_class: ErrorClass, message: str) -> WorkResult:
        return cls(succeeded=False, error_class=error_class, message=message)
