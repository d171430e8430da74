# src/fenestra/engine/executor.py
"""WindowExecutor: runs one dispatched window to a resting state.

One call takes a RUNNING window and drives it through its attempts:

    admit via the circuit breaker
    -> record the attempt start
    -> run the unit of work, classify any failure
    -> record the attempt outcome, report it to the breaker
    -> success:   SUCCEEDED, then advance the watermark
       TRANSIENT: FAILED with next_attempt_at, sleep, re-dispatch, repeat
       PERMANENT: FAILED_EXHAUSTED (no retry)
       budget spent on TRANSIENT failures: FAILED_EXHAUSTED
       circuit open: back to PENDING until the next probe, no budget used
       our own error (e.g. a ledger write): breaker call released, back to
                  PENDING after the base retry interval, no budget used

Ledger writes always precede notifications. A stop request interrupts the
backoff sleep and leaves the window FAILED with its planned retry time, so a
restarted scheduler continues where this one left off.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from fenestra.contracts import (
    AttemptContext,
    AttemptOutcome,
    CircuitOpenError,
    ErrorClass,
    ErrorDetail,
    MaxAttemptsExhausted,
    NotificationSink,
    NullNotificationSink,
    RunVariableBag,
    TransitionReason,
    Window,
    WindowConflictError,
    WindowExhausted,
    WindowState,
    WorkResult,
)
from fenestra.core.clock import DEFAULT_CLOCK, Clock
from fenestra.core.logging import window_context
from fenestra.engine.retry import RetryableAttemptError, RetryConfig, RetryController

if TYPE_CHECKING:
    from fenestra.contracts import Attempt
    from fenestra.core.config import TriggerSettings
    from fenestra.core.ledger import RunLedger
    from fenestra.core.watermark import WatermarkStore
    from fenestra.engine.circuit_breaker import CircuitBreakerRegistry
    from fenestra.plugins.base import BaseUnitOfWork

logger = structlog.get_logger(__name__)

# Re-check delay when a HALF_OPEN circuit rejects because its probe is in flight
_PROBE_BUSY_DELAY = timedelta(seconds=5)


class _AttemptFailed(Exception):
    """A non-retryable attempt failure, carried out of the retry loop."""

    def __init__(self, attempt: int, result: WorkResult) -> None:
        self.attempt = attempt
        self.result = result
        super().__init__(result.message)


class _Abandoned(Exception):
    """The executor gave up the window without recording a final state."""


def build_variables(trigger: TriggerSettings, window: Window, attempt: int) -> RunVariableBag:
    """The RunVariableBag for one attempt: static trigger variables plus window context."""
    bag: RunVariableBag = dict(trigger.variables)
    bag.update(
        {
            "trigger_id": trigger.id,
            "window_start": window.window_start.isoformat(),
            "window_end": window.window_end.isoformat(),
            "attempt": attempt,
        }
    )
    return bag


def _error_detail(result: WorkResult, error: BaseException | None) -> ErrorDetail:
    assert result.error_class is not None
    return {
        "exception": result.message or "",
        "type": type(error).__name__ if error is not None else "WorkResult",
        "error_class": result.error_class.value,
    }


@dataclass
class _Progress:
    """Mutable per-call state shared between the attempt closure and callbacks."""

    window: Window
    attempt: Attempt | None = None
    last_result: WorkResult | None = None


class WindowExecutor:
    """Executes dispatched windows with retry, circuit breaking and recording.

    Thread-safe: a single executor serves every worker of the pool; all
    per-window state lives on the stack of ``execute``.

    Example:
        executor = WindowExecutor(ledger, breakers=registry, watermarks=store)

        running = ledger.mark_dispatched(window)
        if running is not None:
            final = executor.execute(trigger, unit, running)
    """

    def __init__(
        self,
        ledger: RunLedger,
        *,
        breakers: CircuitBreakerRegistry,
        watermarks: WatermarkStore,
        notifications: NotificationSink | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._ledger = ledger
        self._breakers = breakers
        self._watermarks = watermarks
        self._notifications: NotificationSink = notifications if notifications is not None else NullNotificationSink()
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._rng = rng

    def execute(
        self,
        trigger: TriggerSettings,
        unit: BaseUnitOfWork,
        window: Window,
        *,
        stop: threading.Event | None = None,
    ) -> Window | None:
        """Drive a RUNNING window until it succeeds, exhausts, or is parked.

        Args:
            trigger: The window's trigger definition
            unit: Unit of work instance for the trigger
            window: The window, already moved to RUNNING by the scheduler
            stop: Set to interrupt a backoff sleep and leave the window FAILED

        Returns:
            The window as last recorded, or None if the executor lost the
            window to a concurrent writer
        """
        log = logger.bind(trigger_id=trigger.id, window_start=window.window_start.isoformat())
        if window.state != WindowState.RUNNING:
            raise ValueError(f"Window must be RUNNING to execute, got {window.state.value}")

        service_key = trigger.effective_service_key
        breaker = self._breakers.get_breaker(service_key)
        stop_event = stop if stop is not None else threading.Event()

        def sleep(seconds: float) -> None:
            if self._clock.wait(stop_event, seconds):
                raise _Abandoned("stop requested during backoff")

        controller = RetryController(RetryConfig.from_settings(trigger.retry_policy), clock=self._clock, rng=self._rng, sleep=sleep)
        progress = _Progress(window=window)

        def run_attempt(number: int) -> WorkResult:
            current = progress.window
            if current.state != WindowState.RUNNING:
                # Back from a backoff sleep: the window is FAILED, take it again
                redispatched = self._ledger.mark_dispatched(current, detail=f"retry attempt {number}")
                if redispatched is None:
                    raise _Abandoned("window changed during backoff")
                progress.window = current = redispatched

            breaker.before_call()
            reported = False
            try:
                result, error = attempt_once(current, number)
                reported = True
                breaker.after_call(succeeded=result.succeeded)
            finally:
                if not reported:
                    breaker.release()

            if result.succeeded:
                return result
            log.info("attempt_failed", attempt=number, error_class=result.error_class, error=result.message)
            if result.error_class == ErrorClass.TRANSIENT:
                raise RetryableAttemptError(result.message or "transient failure", cause=error)
            raise _AttemptFailed(number, result)

        def attempt_once(current: Window, number: int) -> tuple[WorkResult, BaseException | None]:
            variables = build_variables(trigger, current, number)
            ctx = AttemptContext(
                trigger_id=trigger.id,
                window=current.bounds,
                attempt_number=number,
                service_key=service_key,
                started_at=self._clock.now(),
                watermark=self._watermarks.get_datetime(trigger.watermark_key) if trigger.watermark_key else None,
            )
            attempt = self._ledger.begin_attempt(current, number, service_key=service_key, inputs=variables)
            progress.attempt = attempt

            error: BaseException | None = None
            try:
                with window_context(trigger.id, current.window_start, attempt=number):
                    result = unit.execute(ctx, current.window_start, current.window_end, variables)
            except Exception as e:
                error = e
                result = WorkResult.failure(unit.classify_error(e), f"{type(e).__name__}: {e}")
            progress.last_result = result

            if result.succeeded:
                self._ledger.complete_attempt(attempt, AttemptOutcome.SUCCEEDED, outputs=result.outputs)
            else:
                outcome = AttemptOutcome.TRANSIENT_FAILURE if result.error_class == ErrorClass.TRANSIENT else AttemptOutcome.PERMANENT_FAILURE
                self._ledger.complete_attempt(
                    attempt,
                    outcome,
                    error_class=result.error_class,
                    error=_error_detail(result, error),
                    outputs=result.outputs,
                )
            return result, error

        def on_retry(number: int, error: RetryableAttemptError, delay: float) -> None:
            assert progress.attempt is not None
            next_at = self._clock.now() + timedelta(seconds=delay)
            progress.window = self._ledger.mark_retry_scheduled(
                progress.window,
                attempt=number,
                attempt_id=progress.attempt.attempt_id,
                error=error.message,
                next_attempt_at=next_at,
            )
            log.info("retry_scheduled", attempt=number, delay_seconds=round(delay, 3), next_attempt_at=next_at.isoformat())

        try:
            result = controller.execute(run_attempt, attempts_used=window.attempt, on_retry=on_retry)
            assert progress.attempt is not None, "success without a recorded attempt"
            succeeded = self._ledger.mark_succeeded(progress.window, attempt=progress.attempt.attempt_number)
        except MaxAttemptsExhausted as e:
            message = progress.last_result.message if progress.last_result is not None else (window.last_error or str(e.last_error))
            return self._exhaust(
                trigger,
                progress.window,
                attempt=e.attempts,
                error=message or "retries exhausted",
                error_class=ErrorClass.TRANSIENT,
                reason=TransitionReason.RETRIES_EXHAUSTED,
            )
        except _AttemptFailed as e:
            assert e.result.error_class is not None
            return self._exhaust(
                trigger,
                progress.window,
                attempt=e.attempt,
                error=e.result.message or "permanent failure",
                error_class=e.result.error_class,
                reason=TransitionReason.PERMANENT_ERROR,
            )
        except CircuitOpenError as e:
            next_at = e.next_probe_at if e.next_probe_at is not None else self._clock.now() + _PROBE_BUSY_DELAY
            log.info("attempt_rejected", service_key=e.service_key, next_attempt_at=next_at.isoformat())
            return self._ledger.mark_circuit_rejected(progress.window, error=str(e), next_attempt_at=next_at)
        except _Abandoned as e:
            log.info("window_abandoned", reason=str(e), state=progress.window.state)
            return None
        except WindowConflictError as e:
            log.warning("window_conflict", error=str(e))
            return None
        except Exception as e:
            log.exception("window_execution_failed", error=str(e))
            return self.release(trigger, window, e)

        log.info("window_succeeded", attempt=succeeded.attempt, outputs=result.outputs)
        if trigger.watermark_key:
            self._watermarks.advance(
                trigger.watermark_key,
                succeeded.window_end,
                trigger_id=trigger.id,
                window_start=succeeded.window_start,
            )
        return succeeded

    def release(self, trigger: TriggerSettings, window: Window, error: BaseException) -> Window | None:
        """Hand a window this executor could not finish back to the scheduler.

        The window returns to PENDING, due again after the trigger's base
        retry interval. No attempt is charged.

        Returns:
            The released window, or None if it was no longer RUNNING
        """
        message = f"{type(error).__name__}: {error}"
        next_at = self._clock.now() + trigger.retry_policy.base_interval
        released = self._ledger.release_running(
            window.trigger_id, window.window_start, error=message, next_attempt_at=next_at
        )
        if released is not None:
            logger.warning(
                "window_released",
                trigger_id=trigger.id,
                window_start=released.window_start.isoformat(),
                next_attempt_at=next_at.isoformat(),
                error=message,
            )
        return released

    def _exhaust(
        self,
        trigger: TriggerSettings,
        window: Window,
        *,
        attempt: int,
        error: str,
        error_class: ErrorClass,
        reason: TransitionReason,
    ) -> Window:
        exhausted = self._ledger.mark_exhausted(window, attempt=attempt, error=error, error_class=error_class, reason=reason)
        logger.warning(
            "window_exhausted",
            trigger_id=trigger.id,
            window_start=exhausted.window_start.isoformat(),
            attempt=attempt,
            reason=reason,
            error=error,
        )
        self._notifications.notify(
            WindowExhausted(
                timestamp=self._clock.now(),
                trigger_id=trigger.id,
                window_start=exhausted.window_start,
                window_end=exhausted.window_end,
                attempts=attempt,
                error_class=error_class.value,
                last_error=error,
            )
        )
        return exhausted
