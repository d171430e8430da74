# tests/property/conftest.py
"""Shared Hypothesis strategies for property-based tests.

Strategy Categories:
- Instants and window grids (aware UTC datetimes, positive window sizes)
- Retry parameters
- Merge batches (records with a business key and an effective timestamp)

Usage:
    from tests.property.conftest import grid_starts, window_sizes

    @given(start=grid_starts, size=window_sizes)
    def test_tiling(start, size) -> None:
        ...
"""

# =============================================================================
# Hypothesis Settings
# =============================================================================
#
# For standardized @settings decorators, import from tests.property.settings:
#   from tests.property.settings import STANDARD_SETTINGS, DETERMINISM_SETTINGS
#
# Tiers: DETERMINISM (500), STATE_MACHINE (200), STANDARD (100), SLOW (50), QUICK (20)
# =============================================================================

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from hypothesis import strategies as st

# =============================================================================
# Time
# =============================================================================

# Whole seconds keep window arithmetic exact
instants = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(UTC),
).map(lambda dt: dt.replace(microsecond=0))

grid_starts = instants

window_sizes = st.sampled_from(
    [
        timedelta(minutes=1),
        timedelta(minutes=5),
        timedelta(minutes=15),
        timedelta(hours=1),
        timedelta(hours=6),
        timedelta(days=1),
        timedelta(days=7),
    ]
) | st.integers(min_value=60, max_value=3 * 86400).map(lambda s: timedelta(seconds=s))

# Offsets used to build ranges around a grid start
offsets = st.integers(min_value=-3 * 86400, max_value=3 * 86400).map(lambda s: timedelta(seconds=s))

# =============================================================================
# Retry
# =============================================================================

attempt_numbers = st.integers(min_value=1, max_value=200)
base_intervals = st.floats(min_value=0.001, max_value=3600.0, allow_nan=False, allow_infinity=False)
interval_ceilings = st.floats(min_value=0.0, max_value=86400.0, allow_nan=False, allow_infinity=False)

# =============================================================================
# Merge batches
# =============================================================================

_BASE = datetime(2026, 3, 2, tzinfo=UTC)

merge_records = st.builds(
    lambda key, minutes, amount: {
        "id": key,
        "updated_at": _BASE + timedelta(minutes=minutes),
        "amount": amount,
    },
    key=st.integers(min_value=1, max_value=8),
    minutes=st.integers(min_value=0, max_value=20),
    amount=st.integers(min_value=-1000, max_value=1000),
)

merge_batches = st.lists(merge_records, max_size=30)

# Same (id, updated_at) always carries the same content, as when two
# extractions read the same source rows
consistent_merge_records = st.builds(
    lambda key, minutes: {
        "id": key,
        "updated_at": _BASE + timedelta(minutes=minutes),
        "amount": key * 100 + minutes,
    },
    key=st.integers(min_value=1, max_value=8),
    minutes=st.integers(min_value=0, max_value=20),
)

consistent_merge_batches = st.lists(consistent_merge_records, max_size=30)
