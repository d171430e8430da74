# src/fenestra/engine/retry.py
"""RetryController: bounded retries with exponential backoff, via tenacity.

Backoff for attempt n (1-indexed, counted across the window's whole budget):

    min(base_interval * 2^(n-1) + jitter, max_interval),  jitter ~ U[0, base_interval)

The planned delay is handed to ``on_retry`` BEFORE the sleep, which is where
the caller records the next attempt time in the ledger.

Attempts a window consumed before this call (a previous process, or a
scheduler-driven retry) are passed in as ``attempts_used``: they count
against max_attempts and they shift the backoff exponent.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from fenestra.contracts import ErrorClass, MaxAttemptsExhausted, UnitOfWorkError
from fenestra.core.clock import DEFAULT_CLOCK, Clock

if TYPE_CHECKING:
    from fenestra.core.config import RetryPolicySettings

T = TypeVar("T")


class RetryableAttemptError(Exception):
    """An attempt failed with a TRANSIENT error and may be retried.

    Wraps the original failure so tenacity can filter on a single type.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=3 means: try, retry, retry (3 total).
    """

    max_attempts: int = 3
    base_interval: float = 30.0  # seconds
    max_interval: float = 600.0  # seconds

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_interval <= 0:
            raise ValueError("base_interval must be positive")
        if self.max_interval < self.base_interval:
            raise ValueError("max_interval must be >= base_interval")

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: RetryPolicySettings) -> RetryConfig:
        """Factory from RetryPolicySettings config model."""
        return cls(
            max_attempts=settings.max_attempts,
            base_interval=settings.base_interval.total_seconds(),
            max_interval=settings.max_interval.total_seconds(),
        )


def backoff_seconds(attempt: int, base: float, maximum: float, rng: random.Random | None = None) -> float:
    """Delay after failed attempt ``attempt`` (1-indexed) before the next one."""
    if attempt < 1:
        raise ValueError(f"attempt is 1-indexed, got {attempt}")
    jitter = (rng or random).uniform(0.0, base)
    # Cap the exponent; 2^63 seconds is already past any max_interval
    exponential = base * (2 ** min(attempt - 1, 62))
    return min(exponential + jitter, maximum)


class wait_window_backoff(wait_base):  # noqa: N801 - tenacity naming convention
    """tenacity wait strategy for window retries.

    Unlike wait_exponential_jitter, the exponent is offset by the attempts a
    window consumed before the current Retrying loop started.
    """

    def __init__(self, config: RetryConfig, *, attempts_used: int = 0, rng: random.Random | None = None) -> None:
        self._config = config
        self._attempts_used = attempts_used
        self._rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt = self._attempts_used + retry_state.attempt_number
        return backoff_seconds(attempt, self._config.base_interval, self._config.max_interval, self._rng)


def classify_exception(error: BaseException) -> ErrorClass:
    """Default error classifier for units of work.

    UnitOfWorkError subclasses carry their own class. Timeouts and
    connection errors are TRANSIENT. Everything else is PERMANENT:
    retrying a bug or bad input only repeats it.
    """
    if isinstance(error, UnitOfWorkError):
        return error.error_class
    if isinstance(error, TimeoutError | ConnectionError):
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


class RetryController:
    """Runs one window's attempts with retry and backoff.

    Example:
        controller = RetryController(RetryConfig(max_attempts=3), clock=clock)

        result = controller.execute(
            lambda attempt: run_attempt(window, attempt),
            attempts_used=window.attempt,
            on_retry=lambda attempt, error, delay: ledger.mark_retry_scheduled(...),
        )
    """

    def __init__(
        self,
        config: RetryConfig,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize controller.

        Args:
            config: Retry budget and backoff bounds
            clock: Time source (default: system clock)
            rng: Jitter source (default: module-level random)
            sleep: Backoff sleep (default: clock.sleep). May raise to abandon the loop.
        """
        self._config = config
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._rng = rng
        self._sleep = sleep if sleep is not None else self._clock.sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def planned_delay(self, attempt: int) -> timedelta:
        """Backoff after failed attempt ``attempt``, as a timedelta."""
        return timedelta(seconds=backoff_seconds(attempt, self._config.base_interval, self._config.max_interval, self._rng))

    def execute(
        self,
        operation: Callable[[int], T],
        *,
        attempts_used: int = 0,
        on_retry: Callable[[int, RetryableAttemptError, float], None] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Called with the 1-indexed attempt number. Raises
                RetryableAttemptError for TRANSIENT failures; anything else
                it raises propagates immediately.
            attempts_used: Attempts this window already consumed
            on_retry: Called as (attempt, error, delay_seconds) after a
                TRANSIENT failure and BEFORE sleeping

        Returns:
            Result of operation

        Raises:
            MaxAttemptsExhausted: If the budget ran out on TRANSIENT failures
            Exception: Whatever non-retryable error the operation raised
        """
        remaining = self._config.max_attempts - attempts_used
        if remaining < 1:
            raise MaxAttemptsExhausted(attempts_used, RuntimeError("retry budget already spent"))

        def _before_sleep(retry_state: RetryCallState) -> None:
            if on_retry is None:
                return
            outcome = retry_state.outcome
            assert outcome is not None and retry_state.next_action is not None
            error = outcome.exception()
            assert isinstance(error, RetryableAttemptError)
            on_retry(attempts_used + retry_state.attempt_number, error, retry_state.next_action.sleep)

        attempt = attempts_used
        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(remaining),
                wait=wait_window_backoff(self._config, attempts_used=attempts_used, rng=self._rng),
                retry=retry_if_exception(lambda e: isinstance(e, RetryableAttemptError)),
                before_sleep=_before_sleep,
                sleep=self._sleep,
                reraise=False,  # We catch RetryError and convert to MaxAttemptsExhausted
            ):
                with attempt_state:
                    attempt = attempts_used + attempt_state.retry_state.attempt_number
                    return operation(attempt)
        except RetryError as e:
            final_error = e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise MaxAttemptsExhausted(attempt, final_error) from e

        # Should not reach here - Retrying always returns or raises
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
