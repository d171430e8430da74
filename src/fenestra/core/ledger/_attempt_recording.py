# src/fenestra/core/ledger/_attempt_recording.py
"""Attempt recording methods for RunLedger."""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from fenestra.contracts import Attempt, AttemptOutcome, ErrorClass, ErrorDetail, Window, WindowEvent
from fenestra.core.canonical import canonical_json
from fenestra.core.ledger._helpers import as_utc, generate_id
from fenestra.core.ledger.schema import attempts_table, window_events_table

if TYPE_CHECKING:
    from fenestra.core.clock import Clock
    from fenestra.core.ledger._database_ops import DatabaseOps
    from fenestra.core.ledger.repositories import AttemptRepository, WindowEventRepository


class AttemptRecordingMixin:
    """Attempt lifecycle and per-window history. Mixed into RunLedger."""

    # Shared state annotations (set by RunLedger.__init__)
    _ops: DatabaseOps
    _clock: Clock
    _attempt_repo: AttemptRepository
    _event_repo: WindowEventRepository

    def _now(self) -> datetime:
        return as_utc(self._clock.now())

    def begin_attempt(
        self,
        window: Window,
        attempt_number: int,
        *,
        service_key: str | None = None,
        inputs: Mapping[str, Any] | None = None,
    ) -> Attempt:
        """Record the start of an attempt.

        Args:
            window: The RUNNING window being attempted
            attempt_number: 1-indexed number within the current budget
            service_key: Circuit breaker key the attempt was admitted under
            inputs: RunVariableBag handed to the unit of work
        """
        attempt = Attempt(
            attempt_id=generate_id(),
            trigger_id=window.trigger_id,
            window_start=window.window_start,
            attempt_number=attempt_number,
            started_at=self._now(),
            inputs_json=canonical_json(dict(inputs)) if inputs is not None else None,
            service_key=service_key,
        )
        self._ops.execute_insert(
            attempts_table.insert().values(
                attempt_id=attempt.attempt_id,
                trigger_id=attempt.trigger_id,
                window_start=as_utc(attempt.window_start),
                attempt_number=attempt.attempt_number,
                service_key=attempt.service_key,
                started_at=attempt.started_at,
                inputs_json=attempt.inputs_json,
            )
        )
        return attempt

    def complete_attempt(
        self,
        attempt: Attempt,
        outcome: AttemptOutcome,
        *,
        error_class: ErrorClass | None = None,
        error: ErrorDetail | None = None,
        outputs: Mapping[str, Any] | None = None,
    ) -> Attempt:
        """Record how an attempt ended.

        Raises:
            ValueError: If the attempt row does not exist
        """
        finished_at = self._now()
        duration_ms = (finished_at - attempt.started_at).total_seconds() * 1000.0
        error_json = json.dumps(error) if error is not None else None
        outputs_json = canonical_json(dict(outputs)) if outputs is not None else None
        self._ops.execute_update(
            update(attempts_table)
            .where(attempts_table.c.attempt_id == attempt.attempt_id)
            .values(
                outcome=outcome.value,
                finished_at=finished_at,
                duration_ms=duration_ms,
                error_class=error_class.value if error_class is not None else None,
                error_json=error_json,
                outputs_json=outputs_json,
            )
        )
        return Attempt(
            attempt_id=attempt.attempt_id,
            trigger_id=attempt.trigger_id,
            window_start=attempt.window_start,
            attempt_number=attempt.attempt_number,
            started_at=attempt.started_at,
            outcome=outcome,
            finished_at=finished_at,
            duration_ms=duration_ms,
            error_class=error_class,
            error_json=error_json,
            inputs_json=attempt.inputs_json,
            outputs_json=outputs_json,
            service_key=attempt.service_key,
        )

    def get_attempts(self, trigger_id: str, window_start: datetime) -> list[Attempt]:
        """All attempts of a window, oldest first (across reruns)."""
        rows = self._ops.execute_fetchall(
            select(attempts_table)
            .where(
                attempts_table.c.trigger_id == trigger_id,
                attempts_table.c.window_start == as_utc(window_start),
            )
            .order_by(attempts_table.c.started_at, attempts_table.c.attempt_number)
        )
        return [self._attempt_repo.load(row) for row in rows]

    def get_events(self, trigger_id: str, window_start: datetime) -> list[WindowEvent]:
        """State transition history of a window, oldest first."""
        rows = self._ops.execute_fetchall(
            select(window_events_table)
            .where(
                window_events_table.c.trigger_id == trigger_id,
                window_events_table.c.window_start == as_utc(window_start),
            )
            .order_by(window_events_table.c.event_id)
        )
        return [self._event_repo.load(row) for row in rows]
