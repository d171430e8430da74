# src/fenestra/core/retention/purge.py
"""Purge manager for ledger windows based on retention policy.

Identifies terminal windows (SUCCEEDED, FAILED_EXHAUSTED) whose completion
time is older than the retention period and deletes them together with their
attempts and state transitions. PENDING, WAITING and RUNNING windows are
never purged, whatever their age.

Note that a purged window becomes "unknown" to the dependency resolver. Pick
a retention period longer than any dependency look-back.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from time import perf_counter
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, select, tuple_

from fenestra.contracts import PURGEABLE_STATES
from fenestra.core.clock import DEFAULT_CLOCK
from fenestra.core.ledger._helpers import as_utc
from fenestra.core.ledger.schema import attempts_table, window_events_table, windows_table

if TYPE_CHECKING:
    from fenestra.core.clock import Clock
    from fenestra.core.ledger.database import LedgerDB

# Keys per DELETE statement; keeps the IN list under SQLite's variable limit
_BATCH_SIZE = 400


@dataclass
class PurgeResult:
    """Result of a purge operation."""

    deleted_windows: int
    deleted_attempts: int
    deleted_events: int
    duration_seconds: float


class PurgeManager:
    """Manages ledger purging based on retention policy."""

    def __init__(self, db: "LedgerDB", *, clock: "Clock | None" = None) -> None:
        """Initialize PurgeManager.

        Args:
            db: Ledger database connection
            clock: Time source for the default cutoff
        """
        self._db = db
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def find_expired_windows(
        self,
        retention_days: int,
        as_of: datetime | None = None,
    ) -> list[tuple[str, datetime]]:
        """Find windows eligible for deletion.

        Args:
            retention_days: Days to retain terminal windows after completion
            as_of: Reference datetime for cutoff calculation (defaults to now)

        Returns:
            (trigger_id, window_start) keys of expired windows
        """
        if as_of is None:
            as_of = self._clock.now()
        cutoff = as_utc(as_of) - timedelta(days=retention_days)

        query = select(windows_table.c.trigger_id, windows_table.c.window_start).where(
            and_(
                windows_table.c.state.in_([s.value for s in PURGEABLE_STATES]),
                windows_table.c.completed_at.isnot(None),
                windows_table.c.completed_at < cutoff,
            )
        )
        with self._db.connection() as conn:
            return [(row.trigger_id, as_utc(row.window_start)) for row in conn.execute(query)]

    def purge_windows(self, keys: list[tuple[str, datetime]]) -> PurgeResult:
        """Delete the given windows and everything recorded against them.

        Children are deleted before parents (foreign keys are enforced).
        Each batch is one transaction.
        """
        start_time = perf_counter()
        deleted_windows = deleted_attempts = deleted_events = 0

        for i in range(0, len(keys), _BATCH_SIZE):
            requested = [(trigger_id, as_utc(window_start)) for trigger_id, window_start in keys[i : i + _BATCH_SIZE]]
            with self._db.connection() as conn:
                # Re-check state: a rerun between find and purge makes a window live again
                batch = [
                    (row.trigger_id, row.window_start)
                    for row in conn.execute(
                        select(windows_table.c.trigger_id, windows_table.c.window_start).where(
                            tuple_(windows_table.c.trigger_id, windows_table.c.window_start).in_(requested),
                            windows_table.c.state.in_([s.value for s in PURGEABLE_STATES]),
                        )
                    )
                ]
                if not batch:
                    continue
                deleted_events += conn.execute(
                    delete(window_events_table).where(
                        tuple_(window_events_table.c.trigger_id, window_events_table.c.window_start).in_(batch)
                    )
                ).rowcount
                deleted_attempts += conn.execute(
                    delete(attempts_table).where(tuple_(attempts_table.c.trigger_id, attempts_table.c.window_start).in_(batch))
                ).rowcount
                deleted_windows += conn.execute(
                    delete(windows_table).where(tuple_(windows_table.c.trigger_id, windows_table.c.window_start).in_(batch))
                ).rowcount

        return PurgeResult(
            deleted_windows=deleted_windows,
            deleted_attempts=deleted_attempts,
            deleted_events=deleted_events,
            duration_seconds=perf_counter() - start_time,
        )

    def purge(self, retention_days: int, as_of: datetime | None = None) -> PurgeResult:
        """Find and delete every expired window."""
        return self.purge_windows(self.find_expired_windows(retention_days, as_of))
