# tests/unit/core/ledger/test_recorder.py
"""Tests for RunLedger window creation, transitions and queries."""

from datetime import UTC, datetime, timedelta

import pytest

from fenestra.contracts import (
    AttemptOutcome,
    CircuitBreakerRecord,
    CircuitState,
    ErrorClass,
    RerunRejectedError,
    TransitionReason,
    Window,
    WindowBounds,
    WindowState,
)
from fenestra.core.clock import MockClock
from fenestra.core.config import ConfigSnapshot
from fenestra.core.ledger import LedgerDB, RunLedger
from tests.fixtures.factories import make_settings, make_trigger

T0 = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)
HOUR = timedelta(hours=1)


def _bounds(i: int) -> WindowBounds:
    return WindowBounds(T0 + i * HOUR, T0 + (i + 1) * HOUR)


def _window(ledger: RunLedger, i: int = 0, trigger_id: str = "orders") -> Window:
    ledger.create_windows(trigger_id, [_bounds(i)])
    window = ledger.get_window(trigger_id, _bounds(i).start)
    assert window is not None
    return window


class TestCreateWindows:
    def test_creates_pending_windows_in_order(self, ledger: RunLedger) -> None:
        created = ledger.create_windows("orders", [_bounds(2), _bounds(0), _bounds(1)])

        assert [w.window_start for w in created] == [_bounds(i).start for i in range(3)]
        assert all(w.state == WindowState.PENDING and w.attempt == 0 for w in created)

    def test_idempotent(self, ledger: RunLedger) -> None:
        ledger.create_windows("orders", [_bounds(0), _bounds(1)])

        created = ledger.create_windows("orders", [_bounds(1), _bounds(2)])

        assert [w.window_start for w in created] == [_bounds(2).start]
        assert len(ledger.list_windows("orders")) == 3

    def test_records_created_event(self, ledger: RunLedger) -> None:
        window = _window(ledger)

        events = ledger.get_events("orders", window.window_start)

        assert len(events) == 1
        assert events[0].from_state is None
        assert events[0].to_state == WindowState.PENDING
        assert events[0].reason == TransitionReason.CREATED

    def test_round_trips_aware_utc(self, ledger: RunLedger) -> None:
        window = _window(ledger)

        assert window.window_start == T0
        assert window.window_start.tzinfo is not None
        assert window.window_end == T0 + HOUR

    def test_ensure_window_creates_once(self, ledger: RunLedger) -> None:
        first = ledger.ensure_window("orders", _bounds(5))
        second = ledger.ensure_window("orders", _bounds(5))

        assert first == second
        assert len(ledger.list_windows("orders")) == 1


class TestTransitions:
    def test_dispatch_moves_to_running(self, ledger: RunLedger, clock: MockClock) -> None:
        window = _window(ledger)

        running = ledger.mark_dispatched(window)

        assert running is not None
        assert running.state == WindowState.RUNNING
        assert running.version == window.version + 1
        assert running.dispatched_at == clock.now()

    def test_dispatch_with_stale_version_loses(self, ledger: RunLedger) -> None:
        """Two dispatchers read the same row; only one wins."""
        window = _window(ledger)

        first = ledger.mark_dispatched(window)
        second = ledger.mark_dispatched(window)

        assert first is not None
        assert second is None

    def test_dispatch_of_terminal_window_rejected(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        succeeded = ledger.mark_succeeded(running, attempt=1)

        assert ledger.mark_dispatched(succeeded) is None

    def test_retry_scheduled_records_next_attempt(self, ledger: RunLedger, clock: MockClock) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        attempt = ledger.begin_attempt(running, 1)
        retry_at = clock.now() + timedelta(seconds=30)

        failed = ledger.mark_retry_scheduled(running, attempt=1, attempt_id=attempt.attempt_id, error="timeout", next_attempt_at=retry_at)

        assert failed.state == WindowState.FAILED
        assert failed.attempt == 1
        assert failed.next_attempt_at == retry_at
        assert failed.last_error_class == ErrorClass.TRANSIENT
        assert ledger.get_attempts("orders", T0)[0].next_retry_at == retry_at

    def test_exhausted_is_terminal(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None

        exhausted = ledger.mark_exhausted(
            running, attempt=1, error="bad credentials", error_class=ErrorClass.PERMANENT, reason=TransitionReason.PERMANENT_ERROR
        )

        assert exhausted.state == WindowState.FAILED_EXHAUSTED
        assert exhausted.last_error == "bad credentials"
        assert exhausted.completed_at is not None
        assert ledger.due_windows("orders", T0 + 10 * HOUR) == []

    def test_circuit_rejected_keeps_attempt_count(self, ledger: RunLedger, clock: MockClock) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        probe_at = clock.now() + timedelta(minutes=1)

        pending = ledger.mark_circuit_rejected(running, error="circuit open", next_attempt_at=probe_at)

        assert pending.state == WindowState.PENDING
        assert pending.attempt == 0
        assert pending.next_attempt_at == probe_at
        assert pending.last_error_class == ErrorClass.CIRCUIT_OPEN

    def test_mark_waiting_is_idempotent(self, ledger: RunLedger) -> None:
        waiting = ledger.mark_waiting(_window(ledger), detail="waiting on upstream")
        assert waiting is not None

        again = ledger.mark_waiting(waiting, detail="still waiting")

        assert again is waiting
        reasons = [e.reason for e in ledger.get_events("orders", T0)]
        assert reasons == [TransitionReason.CREATED, TransitionReason.DEPENDENCY_WAIT]

    def test_every_transition_is_logged(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        ledger.mark_succeeded(running, attempt=1)

        events = ledger.get_events("orders", T0)

        assert [(e.from_state, e.to_state) for e in events] == [
            (None, WindowState.PENDING),
            (WindowState.PENDING, WindowState.RUNNING),
            (WindowState.RUNNING, WindowState.SUCCEEDED),
        ]


class TestDueWindows:
    def test_fifo_and_respects_next_attempt_at(self, ledger: RunLedger, clock: MockClock) -> None:
        ledger.create_windows("orders", [_bounds(0), _bounds(1), _bounds(2)])
        running = ledger.mark_dispatched(_window(ledger, 1))
        assert running is not None
        attempt = ledger.begin_attempt(running, 1)
        ledger.mark_retry_scheduled(
            running, attempt=1, attempt_id=attempt.attempt_id, error="timeout", next_attempt_at=clock.now() + timedelta(minutes=5)
        )

        now_due = ledger.due_windows("orders", clock.now())
        later_due = ledger.due_windows("orders", clock.now() + timedelta(minutes=5))

        assert [w.window_start for w in now_due] == [_bounds(0).start, _bounds(2).start]
        assert [w.window_start for w in later_due] == [_bounds(i).start for i in range(3)]

    def test_other_triggers_not_included(self, ledger: RunLedger) -> None:
        ledger.create_windows("orders", [_bounds(0)])
        ledger.create_windows("customers", [_bounds(0)])

        assert [w.trigger_id for w in ledger.due_windows("orders", T0 + 5 * HOUR)] == ["orders"]


class TestRerun:
    def test_resets_exhausted_window(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        ledger.mark_exhausted(running, attempt=3, error="timeout", error_class=ErrorClass.TRANSIENT, reason=TransitionReason.RETRIES_EXHAUSTED)

        rerun = ledger.rerun("orders", _bounds(0))

        assert rerun.state == WindowState.PENDING
        assert rerun.attempt == 0
        assert rerun.next_attempt_at is None
        assert ledger.get_events("orders", T0)[-1].reason == TransitionReason.MANUAL_RERUN

    def test_resets_succeeded_window(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        ledger.mark_succeeded(running, attempt=1)

        assert ledger.rerun("orders", _bounds(0)).state == WindowState.PENDING

    def test_running_window_rejected(self, ledger: RunLedger) -> None:
        assert ledger.mark_dispatched(_window(ledger)) is not None

        with pytest.raises(RerunRejectedError, match="running"):
            ledger.rerun("orders", _bounds(0))

    def test_unknown_window_created(self, ledger: RunLedger) -> None:
        window = ledger.rerun("orders", _bounds(7))

        assert window.state == WindowState.PENDING
        assert ledger.get_window("orders", _bounds(7).start) is not None

    def test_siblings_untouched(self, ledger: RunLedger) -> None:
        for i in range(2):
            running = ledger.mark_dispatched(_window(ledger, i))
            assert running is not None
            ledger.mark_succeeded(running, attempt=1)

        ledger.rerun("orders", _bounds(0))

        assert ledger.get_window_state("orders", _bounds(1).start) == WindowState.SUCCEEDED

    def test_fresh_pending_window_is_noop(self, ledger: RunLedger) -> None:
        window = _window(ledger)

        assert ledger.rerun("orders", _bounds(0)) == window


class TestRecovery:
    def test_running_windows_return_to_pending(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        ledger.begin_attempt(running, 1)

        recovered = ledger.recover_interrupted()

        assert [w.state for w in recovered] == [WindowState.PENDING]
        assert ledger.get_attempts("orders", T0)[0].outcome == AttemptOutcome.INTERRUPTED

    def test_scoped_to_triggers(self, ledger: RunLedger) -> None:
        assert ledger.mark_dispatched(_window(ledger, 0, "orders")) is not None
        assert ledger.mark_dispatched(_window(ledger, 0, "customers")) is not None

        recovered = ledger.recover_interrupted(["orders"])

        assert [w.trigger_id for w in recovered] == ["orders"]
        assert ledger.get_window_state("customers", T0) == WindowState.RUNNING


class TestAttempts:
    def test_begin_and_complete(self, ledger: RunLedger, clock: MockClock) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        attempt = ledger.begin_attempt(running, 1, service_key="orders", inputs={"region": "eu"})
        clock.advance(2.5)

        done = ledger.complete_attempt(attempt, AttemptOutcome.SUCCEEDED, outputs={"rows": 10})

        assert done.duration_ms == pytest.approx(2500.0)
        stored = ledger.get_attempts("orders", T0)
        assert len(stored) == 1
        assert stored[0].outcome == AttemptOutcome.SUCCEEDED
        assert stored[0].inputs_json == '{"region":"eu"}'
        assert stored[0].outputs_json == '{"rows":10}'
        assert stored[0].service_key == "orders"

    def test_failed_attempt_keeps_error_detail(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None
        attempt = ledger.begin_attempt(running, 1)

        ledger.complete_attempt(
            attempt,
            AttemptOutcome.PERMANENT_FAILURE,
            error_class=ErrorClass.PERMANENT,
            error={"exception": "bad input", "type": "ValueError", "error_class": "permanent"},
        )

        stored = ledger.get_attempts("orders", T0)[0]
        assert stored.error_class == ErrorClass.PERMANENT
        assert stored.error_json is not None and "bad input" in stored.error_json


class TestQueries:
    def test_state_counts(self, ledger: RunLedger) -> None:
        ledger.create_windows("orders", [_bounds(0), _bounds(1)])
        running = ledger.mark_dispatched(_window(ledger, 0))
        assert running is not None

        counts = ledger.state_counts()

        assert counts == {"orders": {WindowState.RUNNING: 1, WindowState.PENDING: 1}}

    def test_is_window_succeeded(self, ledger: RunLedger) -> None:
        running = ledger.mark_dispatched(_window(ledger))
        assert running is not None

        assert ledger.is_window_succeeded("orders", T0, T0 + HOUR) is False
        ledger.mark_succeeded(running, attempt=1)
        assert ledger.is_window_succeeded("orders", T0, T0 + HOUR) is True
        assert ledger.is_window_succeeded("orders", T0 + HOUR, T0 + 2 * HOUR) is None

    def test_list_windows_newest_first_with_limit(self, ledger: RunLedger) -> None:
        ledger.create_windows("orders", [_bounds(i) for i in range(5)])

        windows = ledger.list_windows("orders", limit=2, newest_first=True)

        assert [w.window_start for w in windows] == [_bounds(4).start, _bounds(3).start]

    def test_materialized_through_follows_created_windows(self, ledger: RunLedger) -> None:
        assert ledger.materialized_through("orders") is None
        ledger.create_windows("orders", [_bounds(0), _bounds(3)])
        ledger.create_windows("orders", [_bounds(1)])

        assert ledger.materialized_through("orders") == _bounds(3).start

    def test_ensure_window_leaves_cursor_alone(self, ledger: RunLedger) -> None:
        ledger.create_windows("orders", [_bounds(0)])

        ledger.ensure_window("orders", _bounds(5))

        assert ledger.materialized_through("orders") == _bounds(0).start
        assert ledger.materialized_through("customers") is None

    def test_windows_in_range(self, ledger: RunLedger) -> None:
        ledger.create_windows("orders", [_bounds(i) for i in range(4)])

        windows = ledger.windows_in_range("orders", _bounds(1).start, _bounds(3).start)

        assert [w.window_start for w in windows] == [_bounds(1).start, _bounds(2).start]


class TestConfigSnapshots:
    def test_versions_increase(self, ledger: RunLedger) -> None:
        assert ledger.next_config_version() == 1
        snapshot = ConfigSnapshot.create(make_settings(make_trigger()), version=1)

        record = ledger.record_config_snapshot(snapshot)

        assert record.config_hash == snapshot.config_hash
        assert ledger.next_config_version() == 2
        latest = ledger.latest_config_snapshot()
        assert latest is not None and latest.version == 1


class TestCircuitPersistence:
    def test_save_and_load_upserts(self, ledger: RunLedger) -> None:
        opened = T0 + HOUR
        ledger.save_circuit(CircuitBreakerRecord("crm", consecutive_failures=2))
        ledger.save_circuit(
            CircuitBreakerRecord("crm", state=CircuitState.OPEN, consecutive_failures=5, opened_at=opened, next_probe_at=opened + HOUR)
        )

        record = ledger.load_circuit("crm")

        assert record is not None
        assert record.state == CircuitState.OPEN
        assert record.next_probe_at == opened + HOUR
        assert [c.service_key for c in ledger.list_circuits()] == ["crm"]
        assert ledger.load_circuit("warehouse") is None


class TestFileBackedLedger:
    def test_state_survives_reopen(self, tmp_path) -> None:
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        clock = MockClock(start=T0)
        with LedgerDB.from_url(url) as db:
            ledger = RunLedger(db, clock=clock)
            running = ledger.mark_dispatched(_window(ledger))
            assert running is not None
            ledger.mark_succeeded(running, attempt=1)

        with LedgerDB.from_url(url) as db:
            assert RunLedger(db, clock=clock).get_window_state("orders", T0) == WindowState.SUCCEEDED
