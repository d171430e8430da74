# tests/integration/test_scenarios.py
"""End-to-end scheduling scenarios.

These run the Orchestrator against a file-backed SQLite ledger with real
plugin construction, a MockClock and (mostly) an inline worker pool, so a
whole run plays out deterministically:

- windows become due exactly when they close
- retry budgets and backoff timings hold across attempts
- dependencies gate and propagate failure across triggers
- a shared circuit parks windows without spending their budget
- state survives a process restart
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from fenestra.contracts import (
    AttemptContext,
    AttemptOutcome,
    CircuitState,
    ErrorClass,
    RunVariableBag,
    WindowExhausted,
    WindowState,
    WorkResult,
)
from fenestra.core.clock import MockClock
from fenestra.core.config import FenestraSettings, TriggerSettings
from fenestra.core.ledger import LedgerDB, RunLedger
from fenestra.core.watermark import WatermarkStore
from fenestra.engine.orchestrator import Orchestrator
from fenestra.plugins.base import BaseUnitOfWork
from fenestra.plugins.manager import PluginManager
from tests.conftest import T0
from tests.fixtures.factories import (
    DeferredExecutor,
    InlineExecutor,
    NoJitter,
    RecordingSink,
    build_scheduler,
    hours,
    make_settings,
    make_trigger,
)
from tests.fixtures.units import ScriptedUnit


def scripted_trigger(trigger_id: str, *steps: str, then: str = "ok", **overrides: Any) -> TriggerSettings:
    return make_trigger(
        trigger_id,
        unit_of_work={"plugin": "scripted", "options": {"script": list(steps), "then": then}},
        **overrides,
    )


def states(ledger: RunLedger, trigger_id: str) -> dict[datetime, WindowState]:
    return {w.window_start: w.state for w in ledger.list_windows(trigger_id)}


def unit_of(orchestrator: Orchestrator, trigger_id: str) -> ScriptedUnit:
    unit = orchestrator.get_scheduler(trigger_id).unit
    assert isinstance(unit, ScriptedUnit)
    return unit


@pytest.fixture
def ledger_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def file_db(ledger_url: str) -> Iterator[LedgerDB]:
    database = LedgerDB.from_url(ledger_url)
    yield database
    database.close()


@pytest.fixture
def file_ledger(file_db: LedgerDB, clock: MockClock) -> RunLedger:
    return RunLedger(file_db, clock=clock)


@pytest.fixture
def run(file_ledger: RunLedger, plugin_manager: PluginManager, clock: MockClock, sink: RecordingSink):
    """Build an orchestrator on the file ledger; shut down at teardown."""
    created: list[Orchestrator] = []

    def _build(settings: FenestraSettings) -> Orchestrator:
        orchestrator = Orchestrator.from_settings(
            settings,
            ledger=file_ledger,
            plugins=plugin_manager,
            notifications=sink,
            clock=clock,
            rng=NoJitter(),
            pool=InlineExecutor(),
        )
        created.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in created:
        orchestrator.shutdown(timeout=5)


class TestWindowsBecomeDue:
    def test_quarter_past_runs_only_the_closed_hour(self, run, file_ledger: RunLedger, clock: MockClock) -> None:
        """At 11:15 the 10:00 window is due and the 11:00 window is not."""
        orchestrator = run(make_settings(scripted_trigger("orders", start_time=T0)))
        clock.advance(timedelta(hours=1, minutes=15))

        orchestrator.run_once()

        assert states(file_ledger, "orders") == {T0: WindowState.SUCCEEDED}
        [call] = unit_of(orchestrator, "orders").calls
        assert (call.window_start, call.window_end) == (T0, T0 + hours(1))

        clock.advance(timedelta(minutes=45))
        orchestrator.run_once()

        assert states(file_ledger, "orders") == {T0: WindowState.SUCCEEDED, T0 + hours(1): WindowState.SUCCEEDED}

    def test_delayed_window_retries_on_schedule(self, run, file_ledger: RunLedger, clock: MockClock) -> None:
        """1h windows, 15m delay: [10:00, 11:00) first runs at 11:15:00, retries at 11:15:30 and 11:16:30."""
        trigger = scripted_trigger("orders", "transient", "transient", start_time=T0, delay="15m")
        orchestrator = run(make_settings(trigger))
        clock.advance(timedelta(hours=1, minutes=14))

        orchestrator.run_once()
        assert file_ledger.list_windows("orders") == []

        clock.advance(timedelta(minutes=1))
        orchestrator.run_once()

        quarter_past = T0 + timedelta(hours=1, minutes=15)
        assert unit_of(orchestrator, "orders").started_at() == [
            quarter_past,
            quarter_past + timedelta(seconds=30),
            quarter_past + timedelta(seconds=90),
        ]
        assert file_ledger.get_window_state("orders", T0) == WindowState.SUCCEEDED

    def test_end_time_bounds_the_grid(self, run, file_ledger: RunLedger, clock: MockClock) -> None:
        trigger = scripted_trigger("orders", start_time=T0 - hours(3), end_time=T0 - hours(1), max_concurrency=5)
        orchestrator = run(make_settings(trigger))
        clock.advance(timedelta(days=1))

        orchestrator.run_once()

        assert sorted(states(file_ledger, "orders")) == [T0 - hours(3), T0 - hours(2)]


class TestRetryBudget:
    def test_permanent_failure_exhausts_on_first_attempt(
        self, run, file_ledger: RunLedger, clock: MockClock, sink: RecordingSink
    ) -> None:
        orchestrator = run(make_settings(scripted_trigger("orders", "permanent", start_time=T0 - hours(1))))

        orchestrator.run_once()

        window = file_ledger.get_window("orders", T0 - hours(1))
        assert window is not None
        assert window.state == WindowState.FAILED_EXHAUSTED
        assert window.attempt == 1
        assert window.last_error_class == ErrorClass.PERMANENT
        assert clock.sleeps == []
        [event] = sink.of_kind("WindowExhausted")
        assert isinstance(event, WindowExhausted)
        assert event.attempts == 1
        assert event.error_class == "permanent"

    def test_transient_failures_exhaust_with_exponential_backoff(
        self, run, file_ledger: RunLedger, clock: MockClock, sink: RecordingSink
    ) -> None:
        trigger = scripted_trigger(
            "orders",
            then="transient",
            start_time=T0 - hours(1),
            retry_policy={"max_attempts": 4, "base_interval": "30s", "max_interval": "90s"},
        )
        orchestrator = run(make_settings(trigger, circuit_breaker={"failure_threshold": 10}))
        start = clock.now()

        orchestrator.run_once()

        unit = unit_of(orchestrator, "orders")
        assert unit.call_count == 4
        assert clock.sleeps == [30.0, 60.0, 90.0]
        assert unit.started_at() == [
            start,
            start + timedelta(seconds=30),
            start + timedelta(seconds=90),
            start + timedelta(seconds=180),
        ]
        attempts = file_ledger.get_attempts("orders", T0 - hours(1))
        assert [a.outcome for a in attempts] == [AttemptOutcome.TRANSIENT_FAILURE] * 4
        window = file_ledger.get_window("orders", T0 - hours(1))
        assert window is not None
        assert window.state == WindowState.FAILED_EXHAUSTED
        assert window.attempt == 4
        [event] = sink.of_kind("WindowExhausted")
        assert isinstance(event, WindowExhausted)
        assert event.attempts == 4

    def test_transient_failures_then_success(self, run, file_ledger: RunLedger) -> None:
        orchestrator = run(make_settings(scripted_trigger("orders", "transient", "raise_timeout", start_time=T0 - hours(1))))

        orchestrator.run_once()

        window = file_ledger.get_window("orders", T0 - hours(1))
        assert window is not None
        assert window.state == WindowState.SUCCEEDED
        assert window.attempt == 3

    def test_rerun_grants_a_fresh_budget(self, run, file_ledger: RunLedger) -> None:
        trigger = scripted_trigger("orders", "permanent", start_time=T0 - hours(1))
        orchestrator = run(make_settings(trigger))
        orchestrator.run_once()

        orchestrator.rerun("orders", T0 - hours(1))
        orchestrator.run_once()

        window = file_ledger.get_window("orders", T0 - hours(1))
        assert window is not None
        assert window.state == WindowState.SUCCEEDED
        assert window.attempt == 1
        outcomes = [a.outcome for a in file_ledger.get_attempts("orders", T0 - hours(1))]
        assert outcomes == [AttemptOutcome.PERMANENT_FAILURE, AttemptOutcome.SUCCEEDED]


class TestDependencies:
    def test_self_dependency_runs_windows_in_order(self, run, file_ledger: RunLedger) -> None:
        trigger = scripted_trigger(
            "orders", start_time=T0 - hours(4), max_concurrency=4, dependencies=[{"offset": "-1h", "size": "1h"}]
        )
        orchestrator = run(make_settings(trigger))

        for _ in range(4):
            orchestrator.run_once()

        starts = [c.window_start for c in unit_of(orchestrator, "orders").calls]
        assert starts == [T0 - hours(4), T0 - hours(3), T0 - hours(2), T0 - hours(1)]
        assert set(states(file_ledger, "orders").values()) == {WindowState.SUCCEEDED}

    def test_failure_propagates_down_a_self_dependency_chain(
        self, run, file_ledger: RunLedger, sink: RecordingSink
    ) -> None:
        trigger = scripted_trigger(
            "orders", "permanent", start_time=T0 - hours(3), max_concurrency=3, dependencies=[{"offset": "-1h", "size": "1h"}]
        )
        orchestrator = run(make_settings(trigger))

        for _ in range(3):
            orchestrator.run_once()

        assert set(states(file_ledger, "orders").values()) == {WindowState.FAILED_EXHAUSTED}
        assert unit_of(orchestrator, "orders").call_count == 1
        later = [file_ledger.get_window("orders", T0 - hours(n)) for n in (2, 1)]
        assert [w.last_error_class for w in later if w is not None] == [ErrorClass.DEPENDENCY_FAILED] * 2
        assert len(sink.of_kind("WindowExhausted")) == 3

    def test_downstream_waits_for_every_upstream_window(self, run, file_ledger: RunLedger) -> None:
        raw = scripted_trigger("raw", start_time=T0 - hours(4), max_concurrency=1)
        report = scripted_trigger(
            "report",
            window_size="2h",
            start_time=T0 - hours(2),
            dependencies=[{"trigger_id": "raw", "offset": "-2h", "size": "2h"}],
        )
        orchestrator = run(make_settings(raw, report))

        orchestrator.run_once()
        assert file_ledger.get_window_state("report", T0 - hours(2)) == WindowState.WAITING_ON_DEPENDENCY

        for _ in range(4):
            orchestrator.run_once()

        assert file_ledger.get_window_state("report", T0 - hours(2)) == WindowState.SUCCEEDED
        assert unit_of(orchestrator, "report").call_count == 1

    def test_exhausted_upstream_fails_downstream(self, run, file_ledger: RunLedger) -> None:
        raw = scripted_trigger("raw", "ok", "permanent", start_time=T0 - hours(4), max_concurrency=1)
        report = scripted_trigger(
            "report",
            window_size="2h",
            start_time=T0 - hours(2),
            dependencies=[{"trigger_id": "raw", "offset": "-2h", "size": "2h"}],
        )
        orchestrator = run(make_settings(raw, report))

        for _ in range(4):
            orchestrator.run_once()

        assert file_ledger.get_window_state("raw", T0 - hours(3)) == WindowState.FAILED_EXHAUSTED
        report_window = file_ledger.get_window("report", T0 - hours(2))
        assert report_window is not None
        assert report_window.state == WindowState.FAILED_EXHAUSTED
        assert report_window.last_error_class == ErrorClass.DEPENDENCY_FAILED
        assert unit_of(orchestrator, "report").call_count == 0


class TestSharedCircuit:
    def test_open_circuit_parks_other_trigger_without_spending_budget(
        self, run, file_ledger: RunLedger, clock: MockClock, sink: RecordingSink
    ) -> None:
        flaky = scripted_trigger(
            "flaky",
            "transient",
            "transient",
            start_time=T0 - hours(2),
            max_concurrency=2,
            service_key="warehouse",
            retry_policy={"max_attempts": 1},
        )
        steady = scripted_trigger("steady", start_time=T0, service_key="warehouse")
        orchestrator = run(make_settings(flaky, steady, circuit_breaker={"failure_threshold": 2, "reset_seconds": 7200}))

        orchestrator.run_once()
        assert orchestrator.breakers.get_breaker("warehouse").state == CircuitState.OPEN
        assert len(sink.of_kind("CircuitOpened")) == 1

        clock.advance(timedelta(hours=1))
        orchestrator.run_once()

        parked = file_ledger.get_window("steady", T0)
        assert parked is not None
        assert parked.state == WindowState.PENDING
        assert parked.attempt == 0
        assert parked.last_error_class == ErrorClass.CIRCUIT_OPEN
        assert unit_of(orchestrator, "steady").call_count == 0

        clock.advance(timedelta(hours=1))
        orchestrator.run_once()

        resumed = file_ledger.get_window("steady", T0)
        assert resumed is not None
        assert resumed.state == WindowState.SUCCEEDED
        assert resumed.attempt == 1
        assert orchestrator.breakers.get_breaker("warehouse").state == CircuitState.CLOSED


class TestWatermarks:
    def test_watermark_advances_only_on_success(self, run, file_ledger: RunLedger, file_db: LedgerDB, clock: MockClock) -> None:
        trigger = scripted_trigger(
            "orders", "ok", "permanent", "ok", start_time=T0 - hours(3), watermark_key="orders_src"
        )
        orchestrator = run(make_settings(trigger))

        for _ in range(3):
            orchestrator.run_once()

        seen = [c.watermark for c in unit_of(orchestrator, "orders").calls]
        assert seen == [None, T0 - hours(2), T0 - hours(2)]
        assert WatermarkStore(file_db, clock=clock).get_datetime("orders_src") == T0
        assert file_ledger.get_window_state("orders", T0 - hours(2)) == WindowState.FAILED_EXHAUSTED


class TestRestart:
    def test_interrupted_windows_resume_after_restart(
        self, ledger_url: str, plugin_manager: PluginManager, clock: MockClock
    ) -> None:
        settings = make_settings(scripted_trigger("orders", start_time=T0 - hours(2), max_concurrency=2, watermark_key="orders_src"))

        # First process: windows are dispatched but the workers never run them
        first_db = LedgerDB.from_url(ledger_url)
        first = Orchestrator.from_settings(
            settings, ledger=RunLedger(first_db, clock=clock), plugins=plugin_manager, clock=clock, pool=DeferredExecutor()
        )
        first.run_once(wait=False)
        assert set(states(first.ledger, "orders").values()) == {WindowState.RUNNING}
        first_db.close()

        second_db = LedgerDB.from_url(ledger_url)
        try:
            ledger = RunLedger(second_db, clock=clock)
            second = Orchestrator.from_settings(
                settings, ledger=ledger, plugins=plugin_manager, clock=clock, rng=NoJitter(), pool=InlineExecutor()
            )
            recovered = second.recover()
            second.run_once()
            second.shutdown(timeout=5)

            assert sorted(w.window_start for w in recovered) == [T0 - hours(2), T0 - hours(1)]
            assert set(states(ledger, "orders").values()) == {WindowState.SUCCEEDED}
            assert unit_of(second, "orders").call_count == 2
            assert second.snapshot.version == 2
            assert WatermarkStore(second_db, clock=clock).get_datetime("orders_src") == T0
        finally:
            second_db.close()


class BarrierUnit(BaseUnitOfWork):
    """Waits at a barrier so a batch only completes if it ran concurrently."""

    name = "barrier"
    plugin_version = "1.0.0"

    def __init__(self, parties: int) -> None:
        super().__init__({})
        self._barrier = threading.Barrier(parties, timeout=5)
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def execute(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            self._barrier.wait()
            time.sleep(0.01)
        finally:
            with self._lock:
                self.active -= 1
        return WorkResult.success()


@pytest.mark.slow
class TestRealWorkerPool:
    def test_max_concurrency_holds_on_threads(self, ledger: RunLedger, clock: MockClock) -> None:
        trigger = make_trigger(start_time=T0 - hours(9), max_concurrency=3)
        unit = BarrierUnit(parties=3)
        with ThreadPoolExecutor(max_workers=6) as pool:
            scheduler = build_scheduler(trigger, unit, ledger=ledger, clock=clock, pool=pool)
            for _ in range(3):
                scheduler.tick()
                assert scheduler.wait_idle(timeout=10)

        assert unit.peak == 3
        assert ledger.count_in_state("orders", WindowState.SUCCEEDED) == 9
