# src/fenestra/core/ledger/recorder.py
"""RunLedger: the execution log and source of truth for window state.

Answers "has this dependency succeeded", backs manual reruns and records
every attempt with its outcome, duration and error detail.

Implementation is split across mixins for maintainability:
- WindowRecordingMixin: window creation and compare-and-set transitions
- AttemptRecordingMixin: attempt rows and per-window history
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite

from fenestra.contracts import (
    DISPATCHABLE_STATES,
    CircuitBreakerRecord,
    ConfigSnapshotRecord,
    Window,
    WindowState,
)
from fenestra.core.canonical import CANONICAL_VERSION
from fenestra.core.clock import DEFAULT_CLOCK
from fenestra.core.ledger._attempt_recording import AttemptRecordingMixin
from fenestra.core.ledger._database_ops import DatabaseOps
from fenestra.core.ledger._helpers import as_utc
from fenestra.core.ledger._window_recording import WindowRecordingMixin
from fenestra.core.ledger.repositories import (
    AttemptRepository,
    CircuitBreakerRepository,
    ConfigSnapshotRepository,
    WindowEventRepository,
    WindowRepository,
)
from fenestra.core.ledger.schema import circuit_breakers_table, config_snapshots_table, windows_table

if TYPE_CHECKING:
    from fenestra.core.clock import Clock
    from fenestra.core.config import ConfigSnapshot
    from fenestra.core.ledger.database import LedgerDB


class RunLedger(WindowRecordingMixin, AttemptRecordingMixin):
    """High-level API for recording and querying window execution.

    Implements the WindowStateQuery protocol consumed by the dependency
    resolver.

    Example:
        ledger = RunLedger(LedgerDB.in_memory(), clock=clock)
        ledger.create_windows("orders_hourly", [WindowBounds(t0, t1)])
        window = ledger.get_window("orders_hourly", t0)
        running = ledger.mark_dispatched(window)
    """

    def __init__(self, db: LedgerDB, *, clock: Clock | None = None) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._clock = clock if clock is not None else DEFAULT_CLOCK

        self._window_repo = WindowRepository()
        self._attempt_repo = AttemptRepository()
        self._event_repo = WindowEventRepository()
        self._circuit_repo = CircuitBreakerRepository()
        self._snapshot_repo = ConfigSnapshotRepository()

    @property
    def db(self) -> LedgerDB:
        return self._db

    # === Window queries ===

    def list_windows(
        self,
        trigger_id: str | None = None,
        *,
        states: Iterable[WindowState] | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Window]:
        query = select(windows_table)
        if trigger_id is not None:
            query = query.where(windows_table.c.trigger_id == trigger_id)
        if states is not None:
            query = query.where(windows_table.c.state.in_([s.value for s in states]))
        if newest_first:
            query = query.order_by(windows_table.c.window_start.desc(), windows_table.c.trigger_id)
        else:
            query = query.order_by(windows_table.c.window_start, windows_table.c.trigger_id)
        if limit is not None:
            query = query.limit(limit)
        return [self._window_repo.load(row) for row in self._ops.execute_fetchall(query)]

    def windows_in_range(self, trigger_id: str, lo: datetime, hi: datetime) -> list[Window]:
        """Windows of a trigger lying fully inside [lo, hi), in start order."""
        query = (
            select(windows_table)
            .where(
                windows_table.c.trigger_id == trigger_id,
                windows_table.c.window_start >= as_utc(lo),
                windows_table.c.window_end <= as_utc(hi),
            )
            .order_by(windows_table.c.window_start)
        )
        return [self._window_repo.load(row) for row in self._ops.execute_fetchall(query)]

    def due_windows(self, trigger_id: str, now: datetime) -> list[Window]:
        """Dispatchable windows whose next_attempt_at has passed, FIFO by start."""
        cutoff = as_utc(now)
        query = (
            select(windows_table)
            .where(
                windows_table.c.trigger_id == trigger_id,
                windows_table.c.state.in_([s.value for s in DISPATCHABLE_STATES]),
                (windows_table.c.next_attempt_at.is_(None)) | (windows_table.c.next_attempt_at <= cutoff),
            )
            .order_by(windows_table.c.window_start)
        )
        return [self._window_repo.load(row) for row in self._ops.execute_fetchall(query)]

    def count_in_state(self, trigger_id: str, state: WindowState) -> int:
        query = select(func.count()).where(windows_table.c.trigger_id == trigger_id, windows_table.c.state == state.value)
        row = self._ops.execute_fetchone(query)
        return int(row[0]) if row is not None else 0

    def state_counts(self, trigger_id: str | None = None) -> dict[str, dict[WindowState, int]]:
        """Window counts per state, per trigger."""
        query = select(windows_table.c.trigger_id, windows_table.c.state, func.count()).group_by(
            windows_table.c.trigger_id, windows_table.c.state
        )
        if trigger_id is not None:
            query = query.where(windows_table.c.trigger_id == trigger_id)
        counts: dict[str, dict[WindowState, int]] = {}
        for row in self._ops.execute_fetchall(query):
            counts.setdefault(row[0], {})[WindowState(row[1])] = int(row[2])
        return counts

    # === WindowStateQuery ===

    def get_window_state(self, trigger_id: str, window_start: datetime) -> WindowState | None:
        window = self.get_window(trigger_id, window_start)
        return window.state if window is not None else None

    def is_window_succeeded(self, trigger_id: str, window_start: datetime, window_end: datetime) -> bool | None:
        """True if SUCCEEDED, False if known otherwise, None if the ledger never saw it."""
        window = self.get_window(trigger_id, window_start)
        if window is None or window.window_end != as_utc(window_end):
            return None
        return window.state == WindowState.SUCCEEDED

    # === Configuration snapshots ===

    def next_config_version(self) -> int:
        row = self._ops.execute_fetchone(select(func.max(config_snapshots_table.c.version)))
        current = row[0] if row is not None else None
        return (current or 0) + 1

    def record_config_snapshot(self, snapshot: ConfigSnapshot) -> ConfigSnapshotRecord:
        record = ConfigSnapshotRecord(
            version=snapshot.version,
            config_hash=snapshot.config_hash,
            settings_json=snapshot.settings_json(),
            loaded_at=self._now(),
        )
        self._ops.execute_insert(
            config_snapshots_table.insert().values(
                version=record.version,
                config_hash=record.config_hash,
                settings_json=record.settings_json,
                canonical_version=CANONICAL_VERSION,
                loaded_at=record.loaded_at,
            )
        )
        return record

    def latest_config_snapshot(self) -> ConfigSnapshotRecord | None:
        row = self._ops.execute_fetchone(
            select(config_snapshots_table).order_by(config_snapshots_table.c.version.desc()).limit(1)
        )
        return self._snapshot_repo.load(row) if row is not None else None

    # === Circuit breaker persistence ===

    def save_circuit(self, record: CircuitBreakerRecord) -> None:
        """Upsert the state of one service's circuit."""
        values = {
            "service_key": record.service_key,
            "state": record.state.value,
            "consecutive_failures": record.consecutive_failures,
            "opened_at": as_utc(record.opened_at),
            "next_probe_at": as_utc(record.next_probe_at),
            "updated_at": self._now(),
        }
        dialect = self._db.engine.dialect.name
        insert_fn = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert_fn(circuit_breakers_table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[circuit_breakers_table.c.service_key],
            set_={k: v for k, v in values.items() if k != "service_key"},
        )
        self._ops.execute_insert(stmt)

    def load_circuit(self, service_key: str) -> CircuitBreakerRecord | None:
        row = self._ops.execute_fetchone(
            select(circuit_breakers_table).where(circuit_breakers_table.c.service_key == service_key)
        )
        return self._circuit_repo.load(row) if row is not None else None

    def list_circuits(self) -> list[CircuitBreakerRecord]:
        rows = self._ops.execute_fetchall(select(circuit_breakers_table).order_by(circuit_breakers_table.c.service_key))
        return [self._circuit_repo.load(row) for row in rows]
