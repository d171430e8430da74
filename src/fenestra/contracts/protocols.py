"""Engine-facing seams.

The scheduler core depends on these protocols, not on concrete classes, so
tests can substitute in-memory doubles and deployments can swap backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from fenestra.contracts.enums import WindowState
    from fenestra.contracts.events import NotificationEvent


class WindowStateQuery(Protocol):
    """Dependency query backed by the run ledger."""

    def is_window_succeeded(self, trigger_id: str, window_start: datetime, window_end: datetime) -> bool | None:
        """Whether the window succeeded.

        Returns:
            True if SUCCEEDED, False if known and not SUCCEEDED,
            None if the ledger has no record of the window.
        """
        ...

    def get_window_state(self, trigger_id: str, window_start: datetime) -> WindowState | None:
        """Current state of the window, or None if unknown."""
        ...


class NotificationSink(Protocol):
    """Fire-and-forget operator notification.

    Implementations MUST NOT raise and MUST NOT block the caller on delivery.
    """

    def notify(self, event: NotificationEvent) -> None: ...


class NullNotificationSink:
    """Sink that discards every event. Default when notifications are off."""

    def notify(self, event: NotificationEvent) -> None:
        return None
