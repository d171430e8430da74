# tests/fixtures/factories.py
"""Test-only factories and doubles.

Usage:
    from tests.fixtures.factories import make_trigger, make_settings, make_context, InlineExecutor
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.exc import OperationalError

from fenestra.contracts import NotificationEvent
from fenestra.core.config import FenestraSettings, TriggerSettings

DEFAULT_START = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)


def make_trigger(trigger_id: str = "orders", **overrides: Any) -> TriggerSettings:
    """Hourly trigger starting at DEFAULT_START running the scripted test unit.

    Durations may be given as shorthand strings ("30s") or timedeltas.
    """
    data: dict[str, Any] = {
        "id": trigger_id,
        "window_size": "1h",
        "start_time": DEFAULT_START,
        "retry_policy": {"max_attempts": 3, "base_interval": "30s", "max_interval": "10m"},
        "unit_of_work": {"plugin": "noop"},
    }
    data.update(overrides)
    return TriggerSettings.model_validate(data)


def make_settings(*triggers: TriggerSettings, **overrides: Any) -> FenestraSettings:
    data: dict[str, Any] = {
        "triggers": [t.model_dump() for t in triggers],
        "ledger": {"url": "sqlite://"},
        "concurrency": {"max_workers": 2, "poll_interval_seconds": 1.0},
    }
    data.update(overrides)
    return FenestraSettings.model_validate(data)


class NoJitter(random.Random):
    """Random source whose uniform() always returns the lower bound.

    Makes backoff delays exact: base * 2^(n-1), capped.
    """

    def uniform(self, a: float, b: float) -> float:
        return a


class FixedJitter(random.Random):
    """uniform() returns a fixed fraction of the range."""

    def __init__(self, fraction: float) -> None:
        super().__init__(0)
        self._fraction = fraction

    def uniform(self, a: float, b: float) -> float:
        return a + (b - a) * self._fraction


class InlineExecutor(Executor):
    """Executor that runs each task synchronously inside submit().

    The returned future is already done, so done-callbacks fire immediately
    when registered.
    """

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future[Any]:
        self.submitted += 1
        future: Future[Any] = Future()
        future.set_running_or_notify_cancel()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Executor that queues tasks until run_pending() is called.

    Lets a test observe windows while they are held RUNNING by a worker.
    """

    def __init__(self) -> None:
        self._pending: list[tuple[Future[Any], Callable[..., Any], tuple[Any, ...], dict[str, Any]]] = []
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future[Any]:
        future: Future[Any] = Future()
        with self._lock:
            self._pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        """Run every queued task in submission order. Returns how many ran."""
        with self._lock:
            batch, self._pending = self._pending, []
        for future, fn, args, kwargs in batch:
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)
        return len(batch)


class RecordingSink:
    """NotificationSink that keeps every event."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []
        self._lock = threading.Lock()

    def notify(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: str) -> list[NotificationEvent]:
        with self._lock:
            return [e for e in self.events if e.kind == kind]


def hours(n: float) -> timedelta:
    return timedelta(hours=n)


def build_scheduler(
    trigger: TriggerSettings,
    unit: Any,
    *,
    ledger: Any,
    clock: Any,
    pool: Executor,
    others: tuple[TriggerSettings, ...] = (),
    sink: RecordingSink | None = None,
    breaker_settings: Any = None,
    rng: random.Random | None = None,
) -> Any:
    """Wire a TriggerScheduler with its executor, resolver and breakers.

    ``others`` are further triggers visible to the dependency resolver.
    Jitter defaults to zero so backoff times are exact.
    """
    from fenestra.core.config import CircuitBreakerSettings
    from fenestra.core.watermark import WatermarkStore
    from fenestra.engine.circuit_breaker import CircuitBreakerRegistry
    from fenestra.engine.dependencies import DependencyResolver
    from fenestra.engine.executor import WindowExecutor
    from fenestra.engine.scheduler import TriggerScheduler

    registry = CircuitBreakerRegistry(
        breaker_settings if breaker_settings is not None else CircuitBreakerSettings(),
        clock=clock,
        ledger=ledger,
        notifications=sink,
    )
    executor = WindowExecutor(
        ledger,
        breakers=registry,
        watermarks=WatermarkStore(ledger.db, clock=clock),
        notifications=sink,
        clock=clock,
        rng=rng if rng is not None else NoJitter(),
    )
    triggers = {t.id: t for t in (trigger, *others)}
    return TriggerScheduler(
        trigger,
        unit,
        ledger=ledger,
        executor=executor,
        resolver=DependencyResolver(ledger, triggers),
        pool=pool,
        clock=clock,
        notifications=sink,
    )


def make_context(
    trigger_id: str = "orders",
    window_start: datetime = DEFAULT_START,
    window_size: timedelta = timedelta(hours=1),
    *,
    attempt_number: int = 1,
    watermark: datetime | None = None,
) -> Any:
    """AttemptContext for calling a unit of work directly."""
    from fenestra.contracts import AttemptContext, WindowBounds

    return AttemptContext(
        trigger_id=trigger_id,
        window=WindowBounds(window_start, window_start + window_size),
        attempt_number=attempt_number,
        service_key=trigger_id,
        started_at=window_start + window_size,
        watermark=watermark,
    )


def lock_once(monkeypatch: pytest.MonkeyPatch, target: object, method: str) -> None:
    """Make ``target.method`` fail once as if the database were locked."""
    original = getattr(target, method)
    failed = False

    def locked(*args: Any, **kwargs: Any) -> Any:
        nonlocal failed
        if not failed:
            failed = True
            raise OperationalError(f"{method}(...)", {}, Exception("database is locked"))
        return original(*args, **kwargs)

    monkeypatch.setattr(target, method, locked)
