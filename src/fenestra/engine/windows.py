# src/fenestra/engine/windows.py
"""Tumbling window arithmetic.

A trigger's windows tile [start_time, end_time) with half-open intervals of
window_size: window i is [start_time + i*size, start_time + (i+1)*size).
A timestamp equal to a window's end belongs to the next window.

Everything here is pure; the scheduler decides what to do with the windows.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from fenestra.contracts import WindowAlignmentError, WindowBounds

if TYPE_CHECKING:
    from fenestra.core.config import TriggerSettings


def window_index(start_time: datetime, size: timedelta, ts: datetime) -> int:
    """Index of the window containing ``ts`` (negative before start_time)."""
    return (ts - start_time) // size


def window_at(start_time: datetime, size: timedelta, index: int) -> WindowBounds:
    start = start_time + index * size
    return WindowBounds(start, start + size)


def iter_windows(
    start_time: datetime,
    size: timedelta,
    lo: datetime,
    hi: datetime,
) -> Iterator[WindowBounds]:
    """Windows of the grid lying fully inside [lo, hi), in start order."""
    if hi <= lo:
        return
    # First window starting at or after lo
    index = max(0, -((start_time - lo) // size))
    while True:
        bounds = window_at(start_time, size, index)
        if bounds.end > hi:
            return
        yield bounds
        index += 1


def trigger_windows_within(trigger: TriggerSettings, lo: datetime, hi: datetime) -> list[WindowBounds]:
    """A trigger's windows lying fully inside [lo, hi), clipped to the trigger's range."""
    upper = hi if trigger.end_time is None else min(hi, trigger.end_time)
    lower = max(lo, trigger.start_time)
    return list(iter_windows(trigger.start_time, trigger.window_size, lower, upper))


def window_for_timestamp(trigger: TriggerSettings, ts: datetime) -> WindowBounds | None:
    """The window containing ``ts``, or None outside the trigger's range."""
    if ts < trigger.start_time:
        return None
    if trigger.end_time is not None and ts >= trigger.end_time:
        return None
    return window_at(trigger.start_time, trigger.window_size, window_index(trigger.start_time, trigger.window_size, ts))


def closed_windows(
    trigger: TriggerSettings,
    now: datetime,
    *,
    after: datetime | None = None,
    limit: int | None = None,
) -> list[WindowBounds]:
    """Windows whose end + delay has passed, in start order.

    Args:
        trigger: Trigger definition
        now: Current time
        after: Only windows starting strictly after this instant
        limit: Maximum number of windows to return (oldest first)
    """
    # Latest instant a window may end and still be due
    horizon = now - trigger.delay
    if trigger.end_time is not None:
        horizon = min(horizon, trigger.end_time)
    lo = trigger.start_time
    if after is not None:
        lo = max(lo, after + trigger.window_size)
    result: list[WindowBounds] = []
    for bounds in iter_windows(trigger.start_time, trigger.window_size, lo, horizon):
        result.append(bounds)
        if limit is not None and len(result) >= limit:
            break
    return result


def align(trigger: TriggerSettings, start: datetime, end: datetime | None = None) -> WindowBounds:
    """Validate that [start, end) is exactly one window of the trigger's grid.

    Raises:
        WindowAlignmentError: If the bounds are off-grid or outside the trigger's range
    """
    if (start - trigger.start_time) % trigger.window_size != timedelta(0):
        raise WindowAlignmentError(
            f"{start.isoformat()} is not a window boundary of trigger '{trigger.id}' "
            f"(start {trigger.start_time.isoformat()}, size {trigger.window_size})"
        )
    bounds = WindowBounds(start, start + trigger.window_size)
    if end is not None and end != bounds.end:
        raise WindowAlignmentError(
            f"Window of trigger '{trigger.id}' starting {start.isoformat()} ends {bounds.end.isoformat()}, not {end.isoformat()}"
        )
    if start < trigger.start_time or (trigger.end_time is not None and bounds.end > trigger.end_time):
        raise WindowAlignmentError(f"Window {start.isoformat()} is outside the range of trigger '{trigger.id}'")
    return bounds
