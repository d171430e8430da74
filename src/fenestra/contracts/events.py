"""Operator-facing notification events.

Events are emitted AFTER the corresponding state is recorded in the ledger -
the ledger is the source of truth, notifications are a courtesy.

Every event carries enough context for an operator to decide on a manual
rerun: trigger id, window bounds, attempt count and the last error.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    """Base class for all notification events.

    Immutable so the export thread can read them without locking.
    """

    timestamp: datetime

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict with datetimes rendered as ISO-8601."""
        payload = {k: v.isoformat() if isinstance(v, datetime) else v for k, v in asdict(self).items()}
        payload["kind"] = self.kind
        return payload


@dataclass(frozen=True, slots=True)
class WindowExhausted(NotificationEvent):
    """A window reached FAILED_EXHAUSTED and will not retry automatically.

    Attributes:
        trigger_id: Owning trigger
        window_start: Inclusive window start
        window_end: Exclusive window end
        attempts: Attempts consumed (0 when a dependency failed)
        error_class: ErrorClass value of the final failure
        last_error: Message of the final failure
    """

    trigger_id: str
    window_start: datetime
    window_end: datetime
    attempts: int
    error_class: str
    last_error: str


@dataclass(frozen=True, slots=True)
class CircuitOpened(NotificationEvent):
    """A service's circuit transitioned to OPEN.

    Attributes:
        service_key: Service whose circuit opened
        consecutive_failures: Failure count that tripped it
        next_probe_at: When a probe call will be admitted
        reopened: True when a HALF_OPEN probe failed, False on first trip
    """

    service_key: str
    consecutive_failures: int
    next_probe_at: datetime
    reopened: bool
