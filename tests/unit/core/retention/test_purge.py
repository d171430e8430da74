# tests/unit/core/retention/test_purge.py
"""Tests for retention purging of terminal windows."""

from datetime import UTC, datetime, timedelta

from fenestra.contracts import ErrorClass, TransitionReason, WindowBounds, WindowState
from fenestra.core.clock import MockClock
from fenestra.core.ledger import LedgerDB, RunLedger
from fenestra.core.retention import PurgeManager

T0 = datetime(2026, 1, 1, tzinfo=UTC)
HOUR = timedelta(hours=1)


def _bounds(i: int) -> WindowBounds:
    return WindowBounds(T0 + i * HOUR, T0 + (i + 1) * HOUR)


def _complete(ledger: RunLedger, i: int, *, succeed: bool = True) -> None:
    ledger.create_windows("orders", [_bounds(i)])
    window = ledger.get_window("orders", _bounds(i).start)
    assert window is not None
    running = ledger.mark_dispatched(window)
    assert running is not None
    attempt = ledger.begin_attempt(running, 1)
    if succeed:
        ledger.mark_succeeded(running, attempt=1)
    else:
        ledger.mark_exhausted(running, attempt=1, error="boom", error_class=ErrorClass.PERMANENT, reason=TransitionReason.PERMANENT_ERROR)
    assert attempt.attempt_number == 1


class TestPurgeManager:
    def test_finds_only_old_terminal_windows(self, db: LedgerDB) -> None:
        clock = MockClock(start=T0)
        ledger = RunLedger(db, clock=clock)
        _complete(ledger, 0)
        _complete(ledger, 1, succeed=False)
        ledger.create_windows("orders", [_bounds(2)])  # PENDING forever
        clock.advance(timedelta(days=40))
        _complete(ledger, 3)  # completed recently

        expired = PurgeManager(db, clock=clock).find_expired_windows(30)

        assert sorted(expired) == [("orders", _bounds(0).start), ("orders", _bounds(1).start)]

    def test_purge_deletes_children(self, db: LedgerDB) -> None:
        clock = MockClock(start=T0)
        ledger = RunLedger(db, clock=clock)
        _complete(ledger, 0)
        clock.advance(timedelta(days=100))

        result = PurgeManager(db, clock=clock).purge(90)

        assert result.deleted_windows == 1
        assert result.deleted_attempts == 1
        assert result.deleted_events == 3  # created, dispatched, succeeded
        assert ledger.get_window("orders", T0) is None
        assert ledger.get_attempts("orders", T0) == []

    def test_window_rerun_after_find_survives(self, db: LedgerDB) -> None:
        """A rerun between find and purge makes the window live again."""
        clock = MockClock(start=T0)
        ledger = RunLedger(db, clock=clock)
        _complete(ledger, 0)
        clock.advance(timedelta(days=100))
        manager = PurgeManager(db, clock=clock)
        expired = manager.find_expired_windows(90)

        ledger.rerun("orders", _bounds(0))
        result = manager.purge_windows(expired)

        assert result.deleted_windows == 0
        assert ledger.get_window_state("orders", T0) == WindowState.PENDING

    def test_nothing_expired(self, db: LedgerDB) -> None:
        result = PurgeManager(db, clock=MockClock(start=T0)).purge(90)

        assert (result.deleted_windows, result.deleted_attempts, result.deleted_events) == (0, 0, 0)
