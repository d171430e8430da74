"""Repository layer for ledger records.

Handles the seam between SQLAlchemy rows (strings, naive datetimes) and
domain objects (strict enum types, aware UTC datetimes). This is NOT a trust
boundary - if the database has bad data, we crash.
"""

from typing import Any

from sqlalchemy.engine import Row as SARow

from fenestra.contracts import (
    Attempt,
    AttemptOutcome,
    CircuitBreakerRecord,
    CircuitState,
    ConfigSnapshotRecord,
    ErrorClass,
    TransitionReason,
    WatermarkRecord,
    Window,
    WindowEvent,
    WindowState,
)
from fenestra.core.ledger._helpers import as_utc


class WindowRepository:
    """Repository for Window records."""

    def load(self, row: SARow[Any]) -> Window:
        """Load Window from database row.

        Converts string fields to enums. Crashes on invalid data.
        """
        return Window(
            trigger_id=row.trigger_id,
            window_start=as_utc(row.window_start),
            window_end=as_utc(row.window_end),
            state=WindowState(row.state),
            attempt=row.attempt,
            version=row.version,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            next_attempt_at=as_utc(row.next_attempt_at),
            last_error=row.last_error,
            # Explicit is-not-None: an empty string should raise, not become None
            last_error_class=ErrorClass(row.last_error_class) if row.last_error_class is not None else None,
            dispatched_at=as_utc(row.dispatched_at),
            completed_at=as_utc(row.completed_at),
        )


class AttemptRepository:
    """Repository for Attempt records."""

    def load(self, row: SARow[Any]) -> Attempt:
        return Attempt(
            attempt_id=row.attempt_id,
            trigger_id=row.trigger_id,
            window_start=as_utc(row.window_start),
            attempt_number=row.attempt_number,
            started_at=as_utc(row.started_at),
            outcome=AttemptOutcome(row.outcome) if row.outcome is not None else None,
            finished_at=as_utc(row.finished_at),
            duration_ms=row.duration_ms,
            error_class=ErrorClass(row.error_class) if row.error_class is not None else None,
            error_json=row.error_json,
            inputs_json=row.inputs_json,
            outputs_json=row.outputs_json,
            next_retry_at=as_utc(row.next_retry_at),
            service_key=row.service_key,
        )


class WindowEventRepository:
    """Repository for WindowEvent records."""

    def load(self, row: SARow[Any]) -> WindowEvent:
        return WindowEvent(
            event_id=row.event_id,
            trigger_id=row.trigger_id,
            window_start=as_utc(row.window_start),
            from_state=WindowState(row.from_state) if row.from_state is not None else None,
            to_state=WindowState(row.to_state),
            reason=TransitionReason(row.reason),
            recorded_at=as_utc(row.recorded_at),
            detail=row.detail,
        )


class WatermarkRepository:
    """Repository for WatermarkRecord records."""

    def load(self, row: SARow[Any]) -> WatermarkRecord:
        return WatermarkRecord(
            source_key=row.source_key,
            value=row.value,
            updated_at=as_utc(row.updated_at),
            version=row.version,
            trigger_id=row.trigger_id,
            window_start=as_utc(row.window_start),
        )


class CircuitBreakerRepository:
    """Repository for CircuitBreakerRecord records."""

    def load(self, row: SARow[Any]) -> CircuitBreakerRecord:
        return CircuitBreakerRecord(
            service_key=row.service_key,
            state=CircuitState(row.state),
            consecutive_failures=row.consecutive_failures,
            opened_at=as_utc(row.opened_at),
            next_probe_at=as_utc(row.next_probe_at),
        )


class ConfigSnapshotRepository:
    """Repository for ConfigSnapshotRecord records."""

    def load(self, row: SARow[Any]) -> ConfigSnapshotRecord:
        return ConfigSnapshotRecord(
            version=row.version,
            config_hash=row.config_hash,
            settings_json=row.settings_json,
            loaded_at=as_utc(row.loaded_at),
        )
