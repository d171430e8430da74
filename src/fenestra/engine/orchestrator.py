# src/fenestra/engine/orchestrator.py
"""Orchestrator: owns the active configuration snapshot and the schedulers.

Coordinates:
- Startup recovery of windows left RUNNING by a previous process
- One scheduler loop thread per enabled trigger
- The shared worker pool that runs units of work
- Transactional configuration reload
- Graceful shutdown

The orchestrator is the main entry point for running Fenestra. Components
that outlive a reload (ledger, watermark store, circuit breakers, worker
pool) are created once; schedulers and unit instances are rebuilt from each
snapshot.
"""

from __future__ import annotations

import random
import signal
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from fenestra.contracts import (
    ConfigReloadError,
    NotificationSink,
    NullNotificationSink,
    UnknownTriggerError,
    Window,
)
from fenestra.core.clock import DEFAULT_CLOCK, Clock
from fenestra.core.config import ConfigSnapshot, FenestraSettings
from fenestra.core.watermark import WatermarkStore
from fenestra.engine.circuit_breaker import CircuitBreakerRegistry
from fenestra.engine.dependencies import DependencyResolver
from fenestra.engine.executor import WindowExecutor
from fenestra.engine.scheduler import TickResult, TriggerScheduler
from fenestra.engine.windows import align

if TYPE_CHECKING:
    from fenestra.core.ledger import RunLedger
    from fenestra.plugins.manager import PluginManager

logger = structlog.get_logger(__name__)

# Granularity of the serve loop's checks for reload requests
_SERVE_POLL_SECONDS = 0.5


class Orchestrator:
    """Runs every trigger of a configuration snapshot.

    Example:
        orchestrator = Orchestrator.from_settings(settings, ledger=ledger, plugins=plugins)
        orchestrator.recover()
        orchestrator.start()
        ...
        orchestrator.reload(load_settings(path))
        ...
        orchestrator.shutdown()
    """

    def __init__(
        self,
        snapshot: ConfigSnapshot,
        *,
        ledger: RunLedger,
        plugins: PluginManager,
        notifications: NotificationSink | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        pool: ThreadPoolExecutor | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            snapshot: Active configuration (already recorded in the ledger)
            ledger: Run ledger
            plugins: Plugin manager with unit-of-work plugins registered
            notifications: Operator notification sink
            clock: Time source (default: system clock)
            rng: Backoff jitter source
            pool: Worker pool (default: one sized by concurrency.max_workers)

        Raises:
            PluginNotFoundError: If a trigger names an unknown unit plugin
            PluginConfigError: If a unit rejects its options
        """
        self._ledger = ledger
        self._plugins = plugins
        self._notifications: NotificationSink = notifications if notifications is not None else NullNotificationSink()
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._owns_pool = pool is None
        self._pool = (
            pool
            if pool is not None
            else ThreadPoolExecutor(max_workers=snapshot.settings.concurrency.max_workers, thread_name_prefix="fenestra-worker")
        )

        self._watermarks = WatermarkStore(ledger.db, clock=self._clock)
        self._breakers = CircuitBreakerRegistry(
            snapshot.settings.circuit_breaker,
            clock=self._clock,
            ledger=ledger,
            notifications=self._notifications,
        )
        self._executor = WindowExecutor(
            ledger,
            breakers=self._breakers,
            watermarks=self._watermarks,
            notifications=self._notifications,
            clock=self._clock,
            rng=rng,
        )

        self._lock = threading.RLock()
        self._threads: dict[str, threading.Thread] = {}
        self._started = False
        self._reload_requested = threading.Event()
        self._snapshot = snapshot
        self._schedulers = self._build_schedulers(snapshot)

    @classmethod
    def from_settings(
        cls,
        settings: FenestraSettings,
        *,
        ledger: RunLedger,
        plugins: PluginManager,
        **kwargs: Any,
    ) -> Orchestrator:
        """Create the first snapshot of a process, record it, and build the orchestrator."""
        snapshot = ConfigSnapshot.create(settings, version=ledger.next_config_version())
        orchestrator = cls(snapshot, ledger=ledger, plugins=plugins, **kwargs)
        ledger.record_config_snapshot(snapshot)
        logger.info("config_loaded", version=snapshot.version, config_hash=snapshot.config_hash, triggers=len(settings.triggers))
        return orchestrator

    # === Accessors ===

    @property
    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    @property
    def ledger(self) -> RunLedger:
        return self._ledger

    @property
    def watermarks(self) -> WatermarkStore:
        return self._watermarks

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def schedulers(self) -> dict[str, TriggerScheduler]:
        with self._lock:
            return dict(self._schedulers)

    def get_scheduler(self, trigger_id: str) -> TriggerScheduler:
        with self._lock:
            try:
                return self._schedulers[trigger_id]
            except KeyError:
                raise UnknownTriggerError(trigger_id) from None

    # === Construction ===

    def _build_schedulers(self, snapshot: ConfigSnapshot) -> dict[str, TriggerScheduler]:
        """Build (but do not start) schedulers for every enabled trigger.

        All units are created before anything is returned, so a bad unit
        configuration fails the whole snapshot.
        """
        resolver = DependencyResolver(self._ledger, snapshot.triggers_by_id)
        schedulers: dict[str, TriggerScheduler] = {}
        try:
            for trigger in snapshot.settings.triggers:
                if not trigger.enabled:
                    continue
                unit = self._plugins.create_unit(trigger.unit_of_work)
                schedulers[trigger.id] = TriggerScheduler(
                    trigger,
                    unit,
                    ledger=self._ledger,
                    executor=self._executor,
                    resolver=resolver,
                    pool=self._pool,
                    clock=self._clock,
                    notifications=self._notifications,
                )
        except Exception:
            for scheduler in schedulers.values():
                scheduler.unit.close()
            raise
        return schedulers

    # === Running ===

    def recover(self) -> list[Window]:
        """Return windows left RUNNING by a hard stop to PENDING.

        Covers every trigger in the ledger, not only the configured ones,
        so a trigger removed from configuration does not keep RUNNING rows.
        """
        recovered = self._ledger.recover_interrupted()
        if recovered:
            logger.warning("windows_recovered", count=len(recovered))
        return recovered

    def run_once(self, now: datetime | None = None, *, wait: bool = True, timeout: float | None = None) -> dict[str, TickResult]:
        """Tick every scheduler once.

        Args:
            now: Tick time (default: clock now)
            wait: Wait for dispatched windows to finish (including retries)
            timeout: Upper bound on the wait, in seconds
        """
        with self._lock:
            schedulers = dict(self._schedulers)
        results = {trigger_id: scheduler.tick(now) for trigger_id, scheduler in schedulers.items()}
        if wait:
            for scheduler in schedulers.values():
                scheduler.wait_idle(timeout)
        return results

    def start(self) -> None:
        """Start one loop thread per scheduler."""
        with self._lock:
            if self._started:
                return
            self._started = True
            self._start_threads()

    def _start_threads(self) -> None:
        poll_interval = self._snapshot.settings.concurrency.poll_interval_seconds
        for trigger_id, scheduler in self._schedulers.items():
            thread = threading.Thread(
                target=scheduler.run,
                args=(poll_interval,),
                name=f"fenestra-trigger-{trigger_id}",
                daemon=True,
            )
            self._threads[trigger_id] = thread
            thread.start()

    def _stop_schedulers(self, schedulers: dict[str, TriggerScheduler], timeout: float | None) -> None:
        """Stop loops, wait for running attempts, close units."""
        for scheduler in schedulers.values():
            scheduler.stop()
        for trigger_id in schedulers:
            thread = self._threads.pop(trigger_id, None)
            if thread is not None:
                thread.join(timeout)
        for trigger_id, scheduler in schedulers.items():
            if not scheduler.wait_idle(timeout):
                logger.warning("scheduler_not_idle", trigger_id=trigger_id, in_flight=len(scheduler.in_flight()))
            scheduler.unit.close()

    def reload(self, settings: FenestraSettings, *, timeout: float | None = None) -> ConfigSnapshot:
        """Replace the active configuration.

        Transactional: the new snapshot is validated and all its units are
        built before anything changes. On failure the previous snapshot stays
        active and ConfigReloadError is raised.

        Running attempts of the old snapshot finish before the new
        schedulers start; attempts waiting in backoff are parked in the
        ledger and picked up by the new schedulers.

        Raises:
            ConfigReloadError: If the new configuration cannot be applied
        """
        with self._lock:
            snapshot = ConfigSnapshot.create(settings, version=self._ledger.next_config_version())
            if snapshot.config_hash == self._snapshot.config_hash:
                logger.info("config_unchanged", version=self._snapshot.version)
                return self._snapshot
            try:
                schedulers = self._build_schedulers(snapshot)
            except Exception as e:
                logger.error("config_reload_rejected", error=str(e))
                raise ConfigReloadError(f"Configuration reload rejected, keeping version {self._snapshot.version}: {e}") from e

            old_settings = self._snapshot.settings
            if settings.concurrency.max_workers != old_settings.concurrency.max_workers:
                logger.warning("max_workers_change_needs_restart", current=old_settings.concurrency.max_workers)
            if settings.ledger != old_settings.ledger:
                logger.warning("ledger_settings_change_needs_restart")

            self._ledger.record_config_snapshot(snapshot)
            self._stop_schedulers(self._schedulers, timeout)
            self._breakers.reconfigure(settings.circuit_breaker)
            self._snapshot = snapshot
            self._schedulers = schedulers
            if self._started:
                self._start_threads()
            logger.info("config_reloaded", version=snapshot.version, config_hash=snapshot.config_hash, triggers=len(schedulers))
            return snapshot

    def stop(self, *, timeout: float | None = None) -> None:
        """Stop all schedulers; running attempts finish and keep their state."""
        with self._lock:
            self._stop_schedulers(self._schedulers, timeout)
            self._started = False

    def shutdown(self, *, timeout: float | None = None) -> None:
        """Stop everything and release the worker pool."""
        self.stop(timeout=timeout)
        if self._owns_pool:
            self._pool.shutdown(wait=True)
        logger.info("orchestrator_shutdown")

    # === Operator actions ===

    def rerun(self, trigger_id: str, start: datetime, end: datetime | None = None) -> Window:
        """Manual rerun of one window, for enabled and disabled triggers alike.

        Raises:
            UnknownTriggerError: If the trigger is not configured
            WindowAlignmentError: If [start, end) is not a window of the trigger
            RerunRejectedError: If the window is RUNNING
        """
        with self._lock:
            trigger = self._snapshot.triggers_by_id.get(trigger_id)
        if trigger is None:
            raise UnknownTriggerError(trigger_id)
        window = self._ledger.rerun(trigger_id, align(trigger, start, end))
        logger.info("window_rerun", trigger_id=trigger_id, window_start=window.window_start.isoformat())
        return window

    def status(self) -> dict[str, Any]:
        """Point-in-time view of configuration, window states and circuits."""
        with self._lock:
            snapshot = self._snapshot
            schedulers = dict(self._schedulers)
        counts = self._ledger.state_counts()
        triggers: dict[str, Any] = {}
        for trigger in snapshot.settings.triggers:
            scheduler = schedulers.get(trigger.id)
            triggers[trigger.id] = {
                "enabled": trigger.enabled,
                "in_flight": len(scheduler.in_flight()) if scheduler is not None else 0,
                "states": {state.value: n for state, n in counts.get(trigger.id, {}).items()},
            }
        return {
            "config_version": snapshot.version,
            "config_hash": snapshot.config_hash,
            "triggers": triggers,
            "circuits": [
                {"service_key": r.service_key, "state": r.state.value, "consecutive_failures": r.consecutive_failures}
                for r in self._breakers.snapshot()
            ],
        }

    # === Process entry point ===

    @contextmanager
    def _shutdown_handler_context(self) -> Iterator[threading.Event]:
        """Install SIGINT/SIGTERM handlers that set a shutdown event.

        On first signal: sets the event, restores default SIGINT handler
        (so a second Ctrl-C force-kills via KeyboardInterrupt). SIGHUP,
        where the platform has it, requests a configuration reload.

        From a non-main thread signal registration is skipped; the event
        still works, it just won't be triggered by OS signals.
        """
        shutdown_event = threading.Event()

        if threading.current_thread() is not threading.main_thread():
            yield shutdown_event
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        sighup = getattr(signal, "SIGHUP", None)
        original_sighup = signal.getsignal(sighup) if sighup is not None else None

        def _handler(signum: int, frame: Any) -> None:
            shutdown_event.set()
            signal.signal(signal.SIGINT, signal.default_int_handler)

        def _reload_handler(signum: int, frame: Any) -> None:
            self._reload_requested.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        if sighup is not None:
            signal.signal(sighup, _reload_handler)
        try:
            yield shutdown_event
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
            if sighup is not None:
                signal.signal(sighup, original_sighup)

    def request_reload(self) -> None:
        """Ask a serving orchestrator to reload its configuration."""
        self._reload_requested.set()

    def serve(
        self,
        *,
        shutdown_event: threading.Event | None = None,
        settings_loader: Callable[[], FenestraSettings] | None = None,
    ) -> None:
        """Recover, start, and block until SIGINT/SIGTERM (or the given event).

        Args:
            shutdown_event: Pre-created event for embedding and tests; when
                given, no signal handlers are installed.
            settings_loader: Called on a reload request (SIGHUP or
                request_reload()); a failing reload keeps the current
                configuration.
        """
        shutdown_ctx = nullcontext(shutdown_event) if shutdown_event is not None else self._shutdown_handler_context()
        with shutdown_ctx as active_event:
            self.recover()
            self.start()
            logger.info("orchestrator_serving", triggers=sorted(self.schedulers))
            while not active_event.wait(_SERVE_POLL_SECONDS):
                if not self._reload_requested.is_set():
                    continue
                self._reload_requested.clear()
                if settings_loader is None:
                    logger.warning("reload_requested_without_loader")
                    continue
                try:
                    self.reload(settings_loader())
                except Exception as e:
                    # Includes unreadable or invalid files; the service keeps running
                    logger.error("config_reload_failed", error=str(e), error_type=type(e).__name__)
            logger.info("orchestrator_stopping")
            self.shutdown()
