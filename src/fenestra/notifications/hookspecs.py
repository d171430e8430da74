# src/fenestra/notifications/hookspecs.py
"""pluggy hook specifications for notifiers.

Notifiers implement these hooks to register themselves with the framework.
create_notification_manager() calls these hooks to discover available
notifiers.

Usage (implementing a notifier plugin):
    from fenestra.notifications.hookspecs import hookimpl

    class PagerPlugin:
        @hookimpl
        def fenestra_get_notifiers(self):
            return [PagerNotifier]
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from fenestra.notifications.protocols import NotifierProtocol

# Use the same project name as the unit-of-work plugin system
PROJECT_NAME = "fenestra"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for notifier plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class FenestraNotifierSpec:
    """Hook specifications for notifier plugins."""

    @hookspec
    def fenestra_get_notifiers(self) -> list[type["NotifierProtocol"]]:  # type: ignore[empty-body]
        """Return notifier classes.

        Returns:
            List of notifier classes (not instances) that implement
            NotifierProtocol
        """
