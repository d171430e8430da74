# tests/conftest.py
"""Shared test fixtures.

Time is always a MockClock: retry backoff, circuit reset intervals and
dispatch delays advance it instead of sleeping, so scheduling scenarios run
instantly and deterministically.

Ledgers are in-memory SQLite (LedgerDB.in_memory()), one per test.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator
from datetime import UTC, datetime

import pytest
from hypothesis import Phase, Verbosity, settings

from fenestra.core.clock import MockClock
from fenestra.core.ledger import LedgerDB, RunLedger
from fenestra.core.watermark import WatermarkStore
from fenestra.plugins.manager import PluginManager
from tests.fixtures.factories import DeferredExecutor, InlineExecutor, RecordingSink

# Default "now" for tests: the hour the 10:00 window of T0's day becomes due
T0 = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


@pytest.fixture
def clock() -> MockClock:
    return MockClock(start=T0)


@pytest.fixture
def db() -> Iterator[LedgerDB]:
    """Fresh in-memory database per test."""
    database = LedgerDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def ledger(db: LedgerDB, clock: MockClock) -> RunLedger:
    return RunLedger(db, clock=clock)


@pytest.fixture
def watermarks(db: LedgerDB, clock: MockClock) -> WatermarkStore:
    return WatermarkStore(db, clock=clock)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def inline_pool() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def deferred_pool() -> DeferredExecutor:
    return DeferredExecutor()


@pytest.fixture
def plugin_manager() -> PluginManager:
    """PluginManager with built-in units and the test units registered."""
    from tests.fixtures.units import TestUnitsPlugin

    manager = PluginManager()
    manager.register_builtin_plugins()
    manager.register(TestUnitsPlugin())
    return manager


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
