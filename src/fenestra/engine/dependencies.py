# src/fenestra/engine/dependencies.py
"""Dependency resolution: gates a window's PENDING -> RUNNING transition.

For each dependency of a trigger, the target span is

    [window_start + offset, window_start + offset + size)

and the target windows are the target trigger's windows lying fully inside
that span (clipped to the target trigger's own range). A self-dependency is
the same rule applied to the trigger's own grid.

Outcome:
- every target window SUCCEEDED          -> SATISFIED
- any target window FAILED_EXHAUSTED     -> FAILED (propagate, never skip)
- otherwise (missing, pending, running)  -> BLOCKED, re-checked next tick

A span containing no windows at all (e.g. the first window of a trigger with
a self-dependency on its predecessor) is vacuously satisfied.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from fenestra.contracts import DependencyStatus, UnknownTriggerError, WindowBounds, WindowState, WindowStateQuery
from fenestra.engine.windows import trigger_windows_within

if TYPE_CHECKING:
    from fenestra.core.config import DependencySettings, TriggerSettings


@dataclass(frozen=True, slots=True)
class DependencyTarget:
    """One target window and the state the ledger reports for it."""

    trigger_id: str
    window_start: datetime
    window_end: datetime
    state: WindowState | None  # None: the ledger has never seen this window

    def describe(self) -> str:
        state = self.state.value if self.state is not None else "unknown"
        return f"{self.trigger_id}[{self.window_start.isoformat()}, {self.window_end.isoformat()}) is {state}"


@dataclass(frozen=True, slots=True)
class DependencyResolution:
    """Result of resolving all dependencies of one window."""

    status: DependencyStatus
    blocking: tuple[DependencyTarget, ...] = field(default=())
    failed: tuple[DependencyTarget, ...] = field(default=())

    @property
    def satisfied(self) -> bool:
        return self.status == DependencyStatus.SATISFIED

    def describe(self) -> str:
        if self.failed:
            return "dependency failed: " + "; ".join(t.describe() for t in self.failed)
        if self.blocking:
            return "waiting on: " + "; ".join(t.describe() for t in self.blocking)
        return "dependencies satisfied"


class DependencyResolver:
    """Resolves window dependencies against the ledger.

    Polling, not push: a BLOCKED window is simply resolved again on the next
    scheduler tick, so a restarted resolver loses nothing.
    """

    def __init__(self, query: WindowStateQuery, triggers: Mapping[str, TriggerSettings]) -> None:
        """Initialize resolver.

        Args:
            query: Window state source (the run ledger)
            triggers: All triggers of the active configuration, by id
        """
        self._query = query
        self._triggers = triggers

    def target_windows(self, trigger: TriggerSettings, window: WindowBounds, dependency: DependencySettings) -> list[WindowBounds]:
        """Target windows of one dependency of ``window``."""
        target_id = trigger.id if dependency.is_self else dependency.trigger_id
        try:
            target = self._triggers[target_id]
        except KeyError:
            raise UnknownTriggerError(target_id) from None
        lo = window.start + dependency.offset
        hi = lo + dependency.size
        return trigger_windows_within(target, lo, hi)

    def resolve(self, trigger: TriggerSettings, window: WindowBounds) -> DependencyResolution:
        """Resolve every dependency of a window of ``trigger``."""
        blocking: list[DependencyTarget] = []
        failed: list[DependencyTarget] = []
        for dependency in trigger.dependencies:
            target_id = trigger.id if dependency.is_self else dependency.trigger_id
            for bounds in self.target_windows(trigger, window, dependency):
                state = self._query.get_window_state(target_id, bounds.start)
                if state == WindowState.SUCCEEDED:
                    continue
                target = DependencyTarget(target_id, bounds.start, bounds.end, state)
                if state == WindowState.FAILED_EXHAUSTED:
                    failed.append(target)
                else:
                    blocking.append(target)

        if failed:
            return DependencyResolution(DependencyStatus.FAILED, tuple(blocking), tuple(failed))
        if blocking:
            return DependencyResolution(DependencyStatus.BLOCKED, tuple(blocking))
        return DependencyResolution(DependencyStatus.SATISFIED)
