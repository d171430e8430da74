# src/fenestra/notifications/manager.py
"""NotificationManager: queues operator notifications for background delivery.

1. Receives events from the executor, scheduler and circuit breakers
2. Queues them for delivery on a background export thread
3. Dispatches to every configured notifier with failure isolation
4. Tracks health metrics and logs failures in aggregate

Design principles:
- Notifications are sent AFTER the ledger write (the ledger is the record)
- A failing notifier never affects the others, nor the scheduler
- Configurable backpressure behavior (BLOCK vs DROP)

Thread Safety:
    notify() is called from scheduler and worker threads; _export_loop()
    runs on the export thread. _events_dropped is protected by
    _dropped_lock (both sides write it); every other metric is written only
    by the export thread.
"""

import queue
import threading
from typing import Any

import structlog

from fenestra.contracts import BackpressureMode, NotificationEvent
from fenestra.core.config import NotificationSettings
from fenestra.notifications.protocols import NotifierProtocol

logger = structlog.get_logger(__name__)


class NotificationManager:
    """Delivers notification events to configured notifiers.

    Implements the NotificationSink protocol: notify() never raises and
    never blocks for delivery (in BLOCK mode it may wait for queue space).

    Example:
        >>> manager = NotificationManager(settings.notifications, notifiers=[console])
        >>> manager.notify(event)
        >>> manager.flush()
        >>> manager.close()
    """

    _LOG_INTERVAL = 100  # Log every 100 drops

    def __init__(self, settings: NotificationSettings, notifiers: list[NotifierProtocol]) -> None:
        """Initialize the NotificationManager.

        Args:
            settings: Queue size and backpressure mode
            notifiers: Configured notifier instances. May be empty
                (notifications will be a no-op).
        """
        self._settings = settings
        self._notifiers = notifiers

        # Health metrics
        self._events_sent = 0
        self._events_dropped = 0
        self._notifier_failures: dict[str, int] = {}
        self._last_logged_drop_count = 0

        # Thread coordination
        self._shutdown_event = threading.Event()
        self._dropped_lock = threading.Lock()
        self._export_thread_ready = threading.Event()

        self._queue: queue.Queue[NotificationEvent | None] = queue.Queue(maxsize=settings.queue_size)

        # Non-daemon so close() can drain the queue on shutdown
        self._export_thread = threading.Thread(
            target=self._export_loop,
            name="notification-export",
            daemon=False,
        )
        self._export_thread.start()
        self._export_thread_ready.wait(timeout=5.0)

    def _export_loop(self) -> None:
        """Background thread: consume the queue until the None sentinel."""
        self._export_thread_ready.set()

        while True:
            event = self._queue.get()
            try:
                if event is None:  # Shutdown sentinel
                    break
                self._dispatch(event)
            except Exception as e:
                # Never let one bad event kill the export thread
                logger.error("notification_export_failed", error=str(e))
            finally:
                # ALWAYS call task_done() so flush() cannot hang
                self._queue.task_done()

    def _dispatch(self, event: NotificationEvent) -> None:
        failures = 0
        for notifier in self._notifiers:
            try:
                notifier.send(event)
            except Exception as e:
                failures += 1
                self._notifier_failures[notifier.name] = self._notifier_failures.get(notifier.name, 0) + 1
                logger.warning(
                    "notifier_failed",
                    notifier=notifier.name,
                    event_type=event.kind,
                    error=str(e),
                )

        if failures < len(self._notifiers):
            self._events_sent += 1
            return

        # Every notifier failed: the event is lost
        with self._dropped_lock:
            self._events_dropped += 1
            self._log_drops_if_needed(reason="all_notifiers_failed")

    def notify(self, event: NotificationEvent) -> None:
        """Queue an event for delivery.

        - BLOCK: waits for queue space (bounded by a timeout)
        - DROP: drops the event if the queue is full

        Safe to call from any thread.
        """
        if self._shutdown_event.is_set() or not self._notifiers:
            return

        if not self._export_thread.is_alive():
            logger.critical("notification_export_thread_dead", event_type=event.kind)
            with self._dropped_lock:
                self._events_dropped += 1
            return

        if self._settings.backpressure_mode == BackpressureMode.DROP:
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                with self._dropped_lock:
                    self._events_dropped += 1
                    self._log_drops_if_needed(reason="queue_full")
        else:
            # Timeout prevents a permanent stall if the export thread is stuck
            try:
                self._queue.put(event, timeout=30.0)
            except queue.Full:
                logger.error("notification_put_timed_out", event_type=event.kind)
                with self._dropped_lock:
                    self._events_dropped += 1

    def _log_drops_if_needed(self, *, reason: str) -> None:
        """Log an aggregate drop message every _LOG_INTERVAL drops.

        Must be called while holding _dropped_lock.
        """
        if self._events_dropped - self._last_logged_drop_count >= self._LOG_INTERVAL:
            logger.warning(
                "notifications_dropped",
                reason=reason,
                dropped_since_last_log=self._events_dropped - self._last_logged_drop_count,
                dropped_total=self._events_dropped,
            )
            self._last_logged_drop_count = self._events_dropped

    @property
    def health_metrics(self) -> dict[str, Any]:
        """Snapshot of delivery health. Approximately consistent."""
        with self._dropped_lock:
            events_dropped = self._events_dropped
        return {
            "events_sent": self._events_sent,
            "events_dropped": events_dropped,
            "notifier_failures": self._notifier_failures.copy(),
            "queue_depth": self._queue.qsize(),
            "queue_maxsize": self._queue.maxsize,
        }

    def flush(self) -> None:
        """Wait for the queue to drain, then flush notifiers."""
        if not self._shutdown_event.is_set():
            self._queue.join()
        for notifier in self._notifiers:
            try:
                notifier.flush()
            except Exception as e:
                logger.warning("notifier_flush_failed", notifier=notifier.name, error=str(e))

    def close(self) -> None:
        """Drain the queue, stop the export thread and close notifiers.

        The sentinel goes in FIRST and the thread is then joined; joining the
        queue before the sentinel is queued can leave the thread blocked on
        get(). Idempotent.
        """
        if self._shutdown_event.is_set():
            return
        self._shutdown_event.set()

        sentinel_sent = False
        for _ in range(self._queue.maxsize + 10):
            try:
                self._queue.put(None, timeout=0.1)
                sentinel_sent = True
                break
            except queue.Full:
                # Full: discard one pending event to make room
                try:
                    discarded = self._queue.get_nowait()
                    self._queue.task_done()
                    if discarded is not None:
                        logger.debug("notification_discarded_on_shutdown", event_type=discarded.kind)
                except queue.Empty:
                    pass

        if not sentinel_sent:
            logger.error("notification_sentinel_not_sent")

        self._export_thread.join(timeout=5.0)
        if self._export_thread.is_alive():
            logger.error("notification_export_thread_did_not_exit")

        logger.info("notification_manager_closed", **self.health_metrics)
        for notifier in self._notifiers:
            try:
                notifier.close()
            except Exception as e:
                logger.warning("notifier_close_failed", notifier=notifier.name, error=str(e))
