# src/fenestra/core/ledger/_window_recording.py
"""Window lifecycle recording methods for RunLedger.

Every state change is a compare-and-set on (trigger_id, window_start,
version). The window_events row for a transition is written in the same
transaction, so the event log and the window row never disagree.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Executable, and_, select, update
from sqlalchemy.exc import IntegrityError

from fenestra.contracts import (
    DISPATCHABLE_STATES,
    AttemptOutcome,
    ErrorClass,
    RerunRejectedError,
    TransitionReason,
    Window,
    WindowBounds,
    WindowConflictError,
    WindowState,
)
from fenestra.core.ledger._helpers import as_utc
from fenestra.core.ledger.schema import attempts_table, trigger_cursors_table, window_events_table, windows_table

if TYPE_CHECKING:
    from fenestra.core.clock import Clock
    from fenestra.core.ledger._database_ops import DatabaseOps
    from fenestra.core.ledger.database import LedgerDB
    from fenestra.core.ledger.repositories import WindowRepository


class WindowRecordingMixin:
    """Window creation and state transitions. Mixed into RunLedger."""

    # Shared state annotations (set by RunLedger.__init__)
    _db: LedgerDB
    _ops: DatabaseOps
    _clock: Clock
    _window_repo: WindowRepository

    def _now(self) -> datetime:
        return as_utc(self._clock.now())

    def _window_key(self, trigger_id: str, window_start: datetime) -> Any:
        return and_(
            windows_table.c.trigger_id == trigger_id,
            windows_table.c.window_start == as_utc(window_start),
        )

    def _event_insert(
        self,
        trigger_id: str,
        window_start: datetime,
        from_state: WindowState | None,
        to_state: WindowState,
        reason: TransitionReason,
        detail: str | None,
        recorded_at: datetime,
    ) -> Executable:
        return window_events_table.insert().values(
            trigger_id=trigger_id,
            window_start=as_utc(window_start),
            from_state=from_state.value if from_state is not None else None,
            to_state=to_state.value,
            reason=reason.value,
            detail=detail,
            recorded_at=recorded_at,
        )

    # === Creation ===

    def create_windows(
        self, trigger_id: str, bounds: Sequence[WindowBounds], *, advance_cursor: bool = True
    ) -> list[Window]:
        """Insert PENDING windows that do not exist yet.

        Idempotent: windows already in the ledger are left untouched.

        Args:
            trigger_id: Trigger owning the windows
            bounds: Windows to create
            advance_cursor: Move the trigger's materialization cursor up to the
                latest start in ``bounds``. Only the scheduler materializes;
                ad-hoc creation (reruns) passes False.

        Returns:
            The newly created windows, in start order
        """
        if not bounds:
            return []
        timestamp = self._now()
        lo = as_utc(min(b.start for b in bounds))
        hi = as_utc(max(b.start for b in bounds))
        created: list[Window] = []
        with self._db.connection() as conn:
            existing = {
                as_utc(row.window_start)
                for row in conn.execute(
                    select(windows_table.c.window_start).where(
                        windows_table.c.trigger_id == trigger_id,
                        windows_table.c.window_start >= lo,
                        windows_table.c.window_start <= hi,
                    )
                )
            }
            for b in sorted(bounds, key=lambda b: b.start):
                start = as_utc(b.start)
                if start in existing:
                    continue
                window = Window(
                    trigger_id=trigger_id,
                    window_start=start,
                    window_end=as_utc(b.end),
                    state=WindowState.PENDING,
                    attempt=0,
                    version=1,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
                conn.execute(
                    windows_table.insert().values(
                        trigger_id=window.trigger_id,
                        window_start=window.window_start,
                        window_end=window.window_end,
                        state=window.state.value,
                        attempt=window.attempt,
                        version=window.version,
                        created_at=timestamp,
                        updated_at=timestamp,
                    )
                )
                conn.execute(
                    self._event_insert(trigger_id, start, None, WindowState.PENDING, TransitionReason.CREATED, None, timestamp)
                )
                existing.add(start)
                created.append(window)
            if advance_cursor:
                self._advance_cursor(conn, trigger_id, hi, timestamp)
        return created

    def _advance_cursor(self, conn: Any, trigger_id: str, window_start: datetime, timestamp: datetime) -> None:
        current = conn.execute(
            select(trigger_cursors_table.c.last_window_start).where(trigger_cursors_table.c.trigger_id == trigger_id)
        ).fetchone()
        if current is None:
            conn.execute(
                trigger_cursors_table.insert().values(
                    trigger_id=trigger_id, last_window_start=window_start, updated_at=timestamp
                )
            )
        elif as_utc(current[0]) < window_start:
            conn.execute(
                update(trigger_cursors_table)
                .where(trigger_cursors_table.c.trigger_id == trigger_id)
                .values(last_window_start=window_start, updated_at=timestamp)
            )

    def materialized_through(self, trigger_id: str) -> datetime | None:
        """Start of the last window the scheduler materialized, or None if it never has."""
        row = self._ops.execute_fetchone(
            select(trigger_cursors_table.c.last_window_start).where(trigger_cursors_table.c.trigger_id == trigger_id)
        )
        return as_utc(row[0]) if row is not None else None

    def ensure_window(self, trigger_id: str, bounds: WindowBounds) -> Window:
        """Get the window, creating it PENDING if the ledger has no record.

        Does not move the materialization cursor: a window created here out of
        order leaves the earlier windows for the scheduler to materialize.
        """
        window = self.get_window(trigger_id, bounds.start)
        if window is not None:
            return window
        try:
            self.create_windows(trigger_id, [bounds], advance_cursor=False)
        except IntegrityError:
            # Created concurrently between our read and insert
            pass
        window = self.get_window(trigger_id, bounds.start)
        if window is None:
            raise RuntimeError(f"Window {trigger_id}@{bounds.start.isoformat()} missing right after creation")
        return window

    def get_window(self, trigger_id: str, window_start: datetime) -> Window | None:
        row = self._ops.execute_fetchone(select(windows_table).where(self._window_key(trigger_id, window_start)))
        if row is None:
            return None
        return self._window_repo.load(row)

    # === Compare-and-set transitions ===

    def _transition(
        self,
        window: Window,
        to_state: WindowState,
        reason: TransitionReason,
        *,
        expected: Iterable[WindowState] | None = None,
        detail: str | None = None,
        values: dict[str, Any] | None = None,
        also: Sequence[Executable] = (),
    ) -> Window | None:
        """Move a window to ``to_state`` if nobody changed it since it was read.

        Returns:
            The updated window, or None if the compare-and-set lost
        """
        timestamp = self._now()
        guard = and_(self._window_key(window.trigger_id, window.window_start), windows_table.c.version == window.version)
        if expected is not None:
            guard = and_(guard, windows_table.c.state.in_([s.value for s in expected]))
        stmt = (
            update(windows_table)
            .where(guard)
            .values(state=to_state.value, version=window.version + 1, updated_at=timestamp, **(values or {}))
        )
        with self._db.connection() as conn:
            result = conn.execute(stmt)
            if result.rowcount != 1:
                return None
            conn.execute(
                self._event_insert(window.trigger_id, window.window_start, window.state, to_state, reason, detail, timestamp)
            )
            for extra in also:
                conn.execute(extra)
            row = conn.execute(select(windows_table).where(self._window_key(window.trigger_id, window.window_start))).fetchone()
        assert row is not None, "window vanished inside its own transaction"
        return self._window_repo.load(row)

    def _require(self, window: Window | None, original: Window, expected: str) -> Window:
        if window is None:
            raise WindowConflictError(original.trigger_id, original.window_start, expected)
        return window

    def mark_dispatched(self, window: Window, *, detail: str | None = None) -> Window | None:
        """PENDING / WAITING / FAILED -> RUNNING. None if another writer got there first."""
        return self._transition(
            window,
            WindowState.RUNNING,
            TransitionReason.DISPATCHED,
            expected=DISPATCHABLE_STATES,
            detail=detail,
            values={"dispatched_at": self._now(), "next_attempt_at": None},
        )

    def mark_waiting(self, window: Window, *, detail: str | None = None) -> Window | None:
        """PENDING / FAILED -> WAITING_ON_DEPENDENCY."""
        if window.state == WindowState.WAITING_ON_DEPENDENCY:
            return window
        return self._transition(
            window,
            WindowState.WAITING_ON_DEPENDENCY,
            TransitionReason.DEPENDENCY_WAIT,
            expected=(WindowState.PENDING, WindowState.FAILED),
            detail=detail,
        )

    def mark_succeeded(self, window: Window, *, attempt: int) -> Window:
        """RUNNING -> SUCCEEDED.

        Raises:
            WindowConflictError: If the window changed underneath the attempt
        """
        updated = self._transition(
            window,
            WindowState.SUCCEEDED,
            TransitionReason.ATTEMPT_SUCCEEDED,
            expected=(WindowState.RUNNING,),
            values={"attempt": attempt, "completed_at": self._now(), "next_attempt_at": None},
        )
        return self._require(updated, window, "running")

    def mark_retry_scheduled(
        self,
        window: Window,
        *,
        attempt: int,
        attempt_id: str,
        error: str,
        next_attempt_at: datetime,
    ) -> Window:
        """RUNNING -> FAILED with the planned retry time.

        Written BEFORE the backoff sleep, so a restart during the sleep still
        knows when the window is due again. The attempt row gets the same
        next_retry_at in the same transaction.
        """
        next_at = as_utc(next_attempt_at)
        updated = self._transition(
            window,
            WindowState.FAILED,
            TransitionReason.RETRY_SCHEDULED,
            expected=(WindowState.RUNNING,),
            detail=error,
            values={
                "attempt": attempt,
                "next_attempt_at": next_at,
                "last_error": error,
                "last_error_class": ErrorClass.TRANSIENT.value,
            },
            also=[update(attempts_table).where(attempts_table.c.attempt_id == attempt_id).values(next_retry_at=next_at)],
        )
        return self._require(updated, window, "running")

    def mark_exhausted(
        self,
        window: Window,
        *,
        attempt: int,
        error: str,
        error_class: ErrorClass,
        reason: TransitionReason,
    ) -> Window:
        """-> FAILED_EXHAUSTED. Terminal until a manual rerun.

        Raises:
            WindowConflictError: If the window changed underneath the caller
        """
        updated = self._transition(
            window,
            WindowState.FAILED_EXHAUSTED,
            reason,
            expected=(WindowState.RUNNING, *DISPATCHABLE_STATES),
            detail=error,
            values={
                "attempt": attempt,
                "last_error": error,
                "last_error_class": error_class.value,
                "completed_at": self._now(),
                "next_attempt_at": None,
            },
        )
        return self._require(updated, window, "running or dispatchable")

    def mark_circuit_rejected(self, window: Window, *, error: str, next_attempt_at: datetime | None) -> Window:
        """RUNNING -> PENDING without consuming an attempt.

        The scheduler picks the window up again once ``next_attempt_at`` passes.
        """
        updated = self._transition(
            window,
            WindowState.PENDING,
            TransitionReason.CIRCUIT_REJECTED,
            expected=(WindowState.RUNNING,),
            detail=error,
            values={
                "next_attempt_at": as_utc(next_attempt_at),
                "last_error": error,
                "last_error_class": ErrorClass.CIRCUIT_OPEN.value,
            },
        )
        return self._require(updated, window, "running")

    def release_running(
        self, trigger_id: str, window_start: datetime, *, error: str, next_attempt_at: datetime
    ) -> Window | None:
        """RUNNING -> PENDING after the executor itself failed mid-attempt.

        Re-reads the window, so a caller holding a stale copy can still
        release it. The attempt counter is kept and open attempt rows are
        closed as INTERRUPTED, as in ``recover_interrupted``.

        Returns:
            The released window, or None if it is no longer RUNNING
        """
        window = self.get_window(trigger_id, window_start)
        if window is None or window.state != WindowState.RUNNING:
            return None
        return self._transition(
            window,
            WindowState.PENDING,
            TransitionReason.EXECUTION_ERROR,
            expected=(WindowState.RUNNING,),
            detail=error,
            values={"next_attempt_at": as_utc(next_attempt_at), "last_error": error},
            also=[self._close_open_attempts(window)],
        )

    # === Operator actions ===

    def rerun(self, trigger_id: str, bounds: WindowBounds) -> Window:
        """Re-enter a window at PENDING with a fresh retry budget.

        Works from any non-RUNNING state, including terminal ones, and
        creates the window if the ledger has never seen it. Sibling windows
        are not touched.

        Raises:
            RerunRejectedError: If the window is currently RUNNING
            WindowConflictError: If the window changed while being reset
        """
        window = self.ensure_window(trigger_id, bounds)
        if window.window_end != as_utc(bounds.end):
            raise WindowConflictError(trigger_id, window.window_start, f"end {window.window_end.isoformat()}")
        if window.state == WindowState.RUNNING:
            raise RerunRejectedError(trigger_id, window.window_start, window.state)
        if window.state == WindowState.PENDING and window.attempt == 0 and window.next_attempt_at is None:
            # Already fresh; nothing to reset
            return window
        updated = self._transition(
            window,
            WindowState.PENDING,
            TransitionReason.MANUAL_RERUN,
            expected=[s for s in WindowState if s != WindowState.RUNNING],
            detail=f"reset from {window.state.value} after {window.attempt} attempt(s)",
            values={
                "attempt": 0,
                "next_attempt_at": None,
                "completed_at": None,
                "dispatched_at": None,
            },
        )
        if updated is None:
            current = self.get_window(trigger_id, bounds.start)
            if current is not None and current.state == WindowState.RUNNING:
                raise RerunRejectedError(trigger_id, current.window_start, current.state)
            raise WindowConflictError(trigger_id, window.window_start, window.state.value)
        return updated

    def recover_interrupted(self, trigger_ids: Iterable[str] | None = None) -> list[Window]:
        """Return windows left RUNNING by a hard stop to PENDING.

        The attempt counter is kept - the interrupted attempt was not
        completed, so it is re-attempted rather than counted. Open attempt
        rows are closed with outcome INTERRUPTED.
        """
        query = select(windows_table).where(windows_table.c.state == WindowState.RUNNING.value)
        if trigger_ids is not None:
            query = query.where(windows_table.c.trigger_id.in_(list(trigger_ids)))
        recovered: list[Window] = []
        for row in self._ops.execute_fetchall(query):
            window = self._window_repo.load(row)
            updated = self._transition(
                window,
                WindowState.PENDING,
                TransitionReason.RECOVERED,
                expected=(WindowState.RUNNING,),
                detail="found RUNNING at startup",
                values={"next_attempt_at": None},
                also=[self._close_open_attempts(window)],
            )
            if updated is not None:
                recovered.append(updated)
        return recovered

    def _close_open_attempts(self, window: Window) -> Executable:
        return (
            update(attempts_table)
            .where(
                attempts_table.c.trigger_id == window.trigger_id,
                attempts_table.c.window_start == window.window_start,
                attempts_table.c.outcome.is_(None),
            )
            .values(outcome=AttemptOutcome.INTERRUPTED.value, finished_at=self._now())
        )
