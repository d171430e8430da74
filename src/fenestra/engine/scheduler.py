# src/fenestra/engine/scheduler.py
"""TriggerScheduler: the per-trigger tick loop.

Each tick:

1. Materializes the trigger's closed windows (end + delay <= now) that the
   ledger has not seen yet, as PENDING.
2. Loads the dispatchable windows (PENDING, WAITING_ON_DEPENDENCY, FAILED
   with next_attempt_at passed), oldest first, skipping the ones a worker
   already holds.
3. Resolves each window's dependencies: FAILED propagates to
   FAILED_EXHAUSTED, BLOCKED parks the window in WAITING_ON_DEPENDENCY,
   SATISFIED makes it eligible.
4. Dispatches eligible windows FIFO while fewer than max_concurrency are in
   flight, handing each to the WindowExecutor on the shared worker pool.

Materialization follows a per-trigger cursor in the ledger that only this
step advances. A window removed by retention is never recreated, and a
manual rerun of a window that has not been materialized yet leaves the
windows before it for the next tick.

A window whose worker raised while it was RUNNING is released back to
PENDING at the start of the next tick, so it never holds a concurrency slot.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from fenestra.contracts import (
    DependencyStatus,
    ErrorClass,
    NotificationSink,
    NullNotificationSink,
    TransitionReason,
    Window,
    WindowExhausted,
    WindowState,
)
from fenestra.core.clock import DEFAULT_CLOCK, Clock
from fenestra.engine.windows import align, closed_windows

if TYPE_CHECKING:
    from fenestra.core.config import TriggerSettings
    from fenestra.core.ledger import RunLedger
    from fenestra.engine.dependencies import DependencyResolver
    from fenestra.engine.executor import WindowExecutor
    from fenestra.plugins.base import BaseUnitOfWork

logger = structlog.get_logger(__name__)

# Windows materialized per tick; a trigger far behind catches up over several ticks
DEFAULT_MATERIALIZE_LIMIT = 1000


@dataclass
class TickResult:
    """What one tick did, for logging and tests."""

    created: list[Window] = field(default_factory=list)
    dispatched: list[Window] = field(default_factory=list)
    waiting: list[Window] = field(default_factory=list)
    dependency_failed: list[Window] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return not (self.created or self.dispatched or self.waiting or self.dependency_failed)


class TriggerScheduler:
    """Schedules the windows of one trigger.

    Thread-safe: ``tick`` runs on the trigger's own loop thread while worker
    threads report completions; the in-flight set is guarded by a lock.

    Example:
        scheduler = TriggerScheduler(trigger, unit, ledger=ledger, executor=executor,
                                     resolver=resolver, pool=pool, clock=clock)
        scheduler.recover()
        scheduler.tick()      # Dispatches whatever is due now
        scheduler.stop()
        scheduler.wait_idle()
    """

    def __init__(
        self,
        trigger: TriggerSettings,
        unit: BaseUnitOfWork,
        *,
        ledger: RunLedger,
        executor: WindowExecutor,
        resolver: DependencyResolver,
        pool: Executor,
        clock: Clock | None = None,
        notifications: NotificationSink | None = None,
        materialize_limit: int = DEFAULT_MATERIALIZE_LIMIT,
    ) -> None:
        self._trigger = trigger
        self._unit = unit
        self._ledger = ledger
        self._executor = executor
        self._resolver = resolver
        self._pool = pool
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._notifications: NotificationSink = notifications if notifications is not None else NullNotificationSink()
        self._materialize_limit = materialize_limit

        self._lock = threading.Lock()
        self._in_flight: dict[datetime, Future[Window | None]] = {}
        # Windows whose worker crashed while they were RUNNING; released on the next tick
        self._stranded: dict[datetime, BaseException] = {}
        self._stop = threading.Event()
        self._log = logger.bind(trigger_id=trigger.id)

    @property
    def trigger(self) -> TriggerSettings:
        return self._trigger

    @property
    def unit(self) -> BaseUnitOfWork:
        return self._unit

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def in_flight(self) -> frozenset[datetime]:
        """Window starts currently held by a worker (running or in backoff)."""
        with self._lock:
            return frozenset(self._in_flight)

    # === Tick ===

    def materialize(self, now: datetime) -> list[Window]:
        """Record newly closed windows as PENDING."""
        latest = self._ledger.materialized_through(self._trigger.id)
        bounds = closed_windows(self._trigger, now, after=latest, limit=self._materialize_limit)
        created = self._ledger.create_windows(self._trigger.id, bounds)
        if created:
            self._log.info(
                "windows_created",
                count=len(created),
                first=created[0].window_start.isoformat(),
                last=created[-1].window_start.isoformat(),
            )
        return created

    def _release_stranded(self) -> None:
        with self._lock:
            stranded = dict(self._stranded)
        for window_start, error in stranded.items():
            window = self._ledger.get_window(self._trigger.id, window_start)
            if window is not None:
                self._executor.release(self._trigger, window, error)
            with self._lock:
                self._stranded.pop(window_start, None)

    def _is_due(self, window: Window, now: datetime) -> bool:
        # A rerun can bring back a window that has not closed yet
        return window.window_end + self._trigger.delay <= now

    def tick(self, now: datetime | None = None) -> TickResult:
        """Run one scheduling pass. A stopped scheduler does nothing."""
        result = TickResult()
        if self._stop.is_set() or not self._trigger.enabled:
            return result
        if now is None:
            now = self._clock.now()

        self._release_stranded()
        result.created = self.materialize(now)

        held = self.in_flight()
        running = self._ledger.count_in_state(self._trigger.id, WindowState.RUNNING)
        slots = self._trigger.max_concurrency - max(len(held), running)

        for window in self._ledger.due_windows(self._trigger.id, now):
            if window.window_start in held or not self._is_due(window, now):
                continue

            if self._trigger.dependencies:
                resolution = self._resolver.resolve(self._trigger, window.bounds)
                if resolution.status == DependencyStatus.FAILED:
                    result.dependency_failed.append(self._fail_dependency(window, resolution.describe()))
                    continue
                if resolution.status == DependencyStatus.BLOCKED:
                    waiting = self._ledger.mark_waiting(window, detail=resolution.describe())
                    if waiting is not None:
                        result.waiting.append(waiting)
                    continue

            if slots <= 0 or self._stop.is_set():
                continue
            dispatched = self._dispatch(window)
            if dispatched is not None:
                result.dispatched.append(dispatched)
                slots -= 1

        if not result.idle:
            self._log.debug(
                "tick",
                created=len(result.created),
                dispatched=len(result.dispatched),
                waiting=len(result.waiting),
                dependency_failed=len(result.dependency_failed),
            )
        return result

    def _fail_dependency(self, window: Window, detail: str) -> Window:
        exhausted = self._ledger.mark_exhausted(
            window,
            attempt=window.attempt,
            error=detail,
            error_class=ErrorClass.DEPENDENCY_FAILED,
            reason=TransitionReason.DEPENDENCY_FAILED,
        )
        self._log.warning("dependency_failed", window_start=window.window_start.isoformat(), detail=detail)
        self._notifications.notify(
            WindowExhausted(
                timestamp=self._clock.now(),
                trigger_id=self._trigger.id,
                window_start=exhausted.window_start,
                window_end=exhausted.window_end,
                attempts=exhausted.attempt,
                error_class=ErrorClass.DEPENDENCY_FAILED.value,
                last_error=detail,
            )
        )
        return exhausted

    def _dispatch(self, window: Window) -> Window | None:
        running = self._ledger.mark_dispatched(window)
        if running is None:
            self._log.debug("dispatch_conflict", window_start=window.window_start.isoformat())
            return None
        submitted = self._pool.submit(self._run, running)
        with self._lock:
            self._in_flight[running.window_start] = submitted
        # Registered after the entry exists; runs at once if the work already finished
        submitted.add_done_callback(self._done_callback(running.window_start))
        self._log.info("window_dispatched", window_start=running.window_start.isoformat(), attempt=running.attempt + 1)
        return running

    def _run(self, window: Window) -> Window | None:
        return self._executor.execute(self._trigger, self._unit, window, stop=self._stop)

    def _done_callback(self, window_start: datetime) -> Callable[[Future[Window | None]], None]:
        def done(future: Future[Window | None]) -> None:
            error = future.exception()
            with self._lock:
                self._in_flight.pop(window_start, None)
                if error is not None:
                    self._stranded[window_start] = error
            if error is not None:
                self._log.error(
                    "window_execution_crashed",
                    window_start=window_start.isoformat(),
                    error=str(error),
                    exc_info=error,
                )

        return done

    # === Operator actions ===

    def rerun(self, start: datetime, end: datetime | None = None) -> Window:
        """Reset one window to PENDING with a fresh retry budget.

        Raises:
            WindowAlignmentError: If [start, end) is not a window of this trigger
            RerunRejectedError: If the window is RUNNING
        """
        bounds = align(self._trigger, start, end)
        window = self._ledger.rerun(self._trigger.id, bounds)
        self._log.info("window_rerun", window_start=window.window_start.isoformat())
        return window

    def recover(self) -> list[Window]:
        """Return windows left RUNNING by a previous process to PENDING."""
        recovered = self._ledger.recover_interrupted([self._trigger.id])
        if recovered:
            self._log.warning("windows_recovered", count=len(recovered), starts=[w.window_start.isoformat() for w in recovered])
        return recovered

    # === Lifecycle ===

    def run(self, poll_interval: float) -> None:
        """Tick until stopped. Target of the trigger's loop thread."""
        self._log.info("scheduler_started", poll_interval=poll_interval)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                # A failed tick (e.g. the database was briefly locked) is retried next poll
                self._log.exception("tick_failed")
            if self._clock.wait(self._stop, poll_interval):
                break
        self._log.info("scheduler_stopped")

    def stop(self) -> None:
        """Stop dispatching. Attempts already running finish; backoff sleeps end early."""
        self._stop.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight windows to finish. True if none remain."""
        with self._lock:
            futures = list(self._in_flight.values())
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done
