# tests/unit/engine/test_dependencies.py
"""Tests for dependency resolution against the ledger."""

from datetime import timedelta

import pytest

from fenestra.contracts import DependencyStatus, ErrorClass, TransitionReason, UnknownTriggerError, WindowBounds, WindowState
from fenestra.core.config import TriggerSettings
from fenestra.core.ledger import RunLedger
from fenestra.engine.dependencies import DependencyResolver
from tests.fixtures.factories import DEFAULT_START, make_trigger

HOUR = timedelta(hours=1)


def hourly(i: int) -> WindowBounds:
    return WindowBounds(DEFAULT_START + i * HOUR, DEFAULT_START + (i + 1) * HOUR)


def set_state(ledger: RunLedger, trigger_id: str, bounds: WindowBounds, state: WindowState) -> None:
    window = ledger.ensure_window(trigger_id, bounds)
    if state == WindowState.PENDING:
        return
    if state == WindowState.FAILED_EXHAUSTED:
        ledger.mark_exhausted(
            window, attempt=1, error="credentials rejected", error_class=ErrorClass.PERMANENT, reason=TransitionReason.PERMANENT_ERROR
        )
        return
    running = ledger.mark_dispatched(window)
    assert running is not None
    if state == WindowState.SUCCEEDED:
        ledger.mark_succeeded(running, attempt=1)


@pytest.fixture
def raw() -> TriggerSettings:
    return make_trigger("raw")


@pytest.fixture
def daily() -> TriggerSettings:
    """Daily rollup over the previous day of hourly raw windows."""
    return make_trigger(
        "daily",
        window_size="1d",
        start_time=DEFAULT_START + timedelta(days=1),
        dependencies=[{"trigger_id": "raw", "offset": "-1d", "size": "1d"}],
    )


@pytest.fixture
def sequential() -> TriggerSettings:
    return make_trigger("orders", dependencies=[{"offset": "-1h", "size": "1h"}])


def resolver_for(ledger: RunLedger, *triggers: TriggerSettings) -> DependencyResolver:
    return DependencyResolver(ledger, {t.id: t for t in triggers})


class TestTargetWindows:
    def test_coarse_window_over_fine_grid(self, ledger: RunLedger, raw: TriggerSettings, daily: TriggerSettings) -> None:
        resolver = resolver_for(ledger, raw, daily)
        window = WindowBounds(daily.start_time, daily.start_time + timedelta(days=1))

        targets = resolver.target_windows(daily, window, daily.dependencies[0])

        assert targets == [hourly(i) for i in range(24)]

    def test_self_dependency_targets_predecessor(self, ledger: RunLedger, sequential: TriggerSettings) -> None:
        resolver = resolver_for(ledger, sequential)

        assert resolver.target_windows(sequential, hourly(3), sequential.dependencies[0]) == [hourly(2)]

    def test_unknown_target_trigger(self, ledger: RunLedger, daily: TriggerSettings) -> None:
        resolver = resolver_for(ledger, daily)
        window = WindowBounds(daily.start_time, daily.start_time + timedelta(days=1))

        with pytest.raises(UnknownTriggerError):
            resolver.resolve(daily, window)


class TestResolve:
    def test_no_dependencies_satisfied(self, ledger: RunLedger, raw: TriggerSettings) -> None:
        resolution = resolver_for(ledger, raw).resolve(raw, hourly(0))

        assert resolution.satisfied
        assert resolution.describe() == "dependencies satisfied"

    def test_first_window_with_self_dependency_is_satisfied(self, ledger: RunLedger, sequential: TriggerSettings) -> None:
        """The predecessor span lies before start_time and holds no windows."""
        resolution = resolver_for(ledger, sequential).resolve(sequential, hourly(0))

        assert resolution.status == DependencyStatus.SATISFIED

    def test_all_succeeded(self, ledger: RunLedger, raw: TriggerSettings, daily: TriggerSettings) -> None:
        for i in range(24):
            set_state(ledger, "raw", hourly(i), WindowState.SUCCEEDED)

        window = WindowBounds(daily.start_time, daily.start_time + timedelta(days=1))

        resolution = resolver_for(ledger, raw, daily).resolve(daily, window)

        assert resolution.satisfied

    @pytest.mark.parametrize(
        "state",
        [WindowState.PENDING, WindowState.RUNNING, None],
    )
    def test_unfinished_target_blocks(self, ledger: RunLedger, sequential: TriggerSettings, state: WindowState | None) -> None:
        if state is not None:
            set_state(ledger, "orders", hourly(2), state)

        resolution = resolver_for(ledger, sequential).resolve(sequential, hourly(3))

        assert resolution.status == DependencyStatus.BLOCKED
        assert [t.window_start for t in resolution.blocking] == [hourly(2).start]
        assert resolution.blocking[0].state == state
        assert resolution.describe().startswith("waiting on: orders[")

    def test_missing_target_described_as_unknown(self, ledger: RunLedger, sequential: TriggerSettings) -> None:
        resolution = resolver_for(ledger, sequential).resolve(sequential, hourly(3))

        assert "is unknown" in resolution.describe()

    def test_exhausted_target_fails(self, ledger: RunLedger, raw: TriggerSettings, daily: TriggerSettings) -> None:
        for i in range(24):
            set_state(ledger, "raw", hourly(i), WindowState.SUCCEEDED if i != 7 else WindowState.FAILED_EXHAUSTED)
        window = WindowBounds(daily.start_time, daily.start_time + timedelta(days=1))

        resolution = resolver_for(ledger, raw, daily).resolve(daily, window)

        assert resolution.status == DependencyStatus.FAILED
        assert [t.window_start for t in resolution.failed] == [hourly(7).start]
        assert resolution.describe().startswith("dependency failed: raw[")

    def test_failure_wins_over_blocking(self, ledger: RunLedger, raw: TriggerSettings, daily: TriggerSettings) -> None:
        set_state(ledger, "raw", hourly(0), WindowState.FAILED_EXHAUSTED)
        window = WindowBounds(daily.start_time, daily.start_time + timedelta(days=1))

        resolution = resolver_for(ledger, raw, daily).resolve(daily, window)

        assert resolution.status == DependencyStatus.FAILED
        assert len(resolution.blocking) == 23

    def test_target_range_clipped_to_end_time(self, ledger: RunLedger) -> None:
        """Only the target windows that exist on its grid are required."""
        raw = make_trigger("raw", end_time=DEFAULT_START + 12 * HOUR)
        daily = make_trigger(
            "daily",
            window_size="1d",
            start_time=DEFAULT_START + timedelta(days=1),
            dependencies=[{"trigger_id": "raw", "offset": "-1d", "size": "1d"}],
        )
        for i in range(12):
            set_state(ledger, "raw", hourly(i), WindowState.SUCCEEDED)
        window = WindowBounds(daily.start_time, daily.start_time + timedelta(days=1))

        assert resolver_for(ledger, raw, daily).resolve(daily, window).satisfied
