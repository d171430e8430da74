# src/fenestra/engine/__init__.py
"""Scheduling engine: windows, dependencies, retries, circuit breakers and dispatch.

This module provides the execution engine for Fenestra triggers:
- Orchestrator: Process lifecycle, one scheduler loop per trigger
- TriggerScheduler: Per-trigger tick (materialize, resolve, dispatch)
- WindowExecutor: Attempts, retries and recording for one window
- RetryController: Retry logic with tenacity
- CircuitBreakerRegistry: Per-service circuit breakers
- DependencyResolver: Window dependencies across triggers
- plan_merge: Arrival-order independent upsert decisions

Example:
    from pathlib import Path

    from fenestra.core.config import load_settings
    from fenestra.core.ledger import LedgerDB, RunLedger
    from fenestra.engine import Orchestrator

    settings = load_settings(Path("fenestra.yaml"))
    ledger = RunLedger(LedgerDB.from_url(settings.ledger.url))
    orchestrator = Orchestrator.from_settings(settings, ledger=ledger, plugins=plugins)
    orchestrator.serve(settings_loader=lambda: load_settings(Path("fenestra.yaml")))
"""

from fenestra.core.clock import Clock, MockClock, SystemClock
from fenestra.engine.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, NoOpBreaker
from fenestra.engine.dependencies import DependencyResolution, DependencyResolver
from fenestra.engine.executor import WindowExecutor
from fenestra.engine.expression_parser import (
    ExpressionEvaluationError,
    ExpressionParser,
    ExpressionSecurityError,
    ExpressionSyntaxError,
)
from fenestra.engine.merge import MergeDecision, apply_merge, newest_per_key, plan_merge
from fenestra.engine.orchestrator import Orchestrator
from fenestra.engine.retry import RetryableAttemptError, RetryConfig, RetryController
from fenestra.engine.scheduler import TickResult, TriggerScheduler
from fenestra.engine.windows import align, closed_windows, iter_windows, window_for_timestamp

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "Clock",
    "DependencyResolution",
    "DependencyResolver",
    "ExpressionEvaluationError",
    "ExpressionParser",
    "ExpressionSecurityError",
    "ExpressionSyntaxError",
    "MergeDecision",
    "MockClock",
    "NoOpBreaker",
    "Orchestrator",
    "RetryConfig",
    "RetryController",
    "RetryableAttemptError",
    "SystemClock",
    "TickResult",
    "TriggerScheduler",
    "WindowExecutor",
    "align",
    "apply_merge",
    "closed_windows",
    "iter_windows",
    "newest_per_key",
    "plan_merge",
    "window_for_timestamp",
]
