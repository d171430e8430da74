"""Built-in notifiers.

- ConsoleNotifier: Write events to stdout/stderr
- WebhookNotifier: POST events as JSON over HTTP

Notifiers are registered via the fenestra_get_notifiers hook; the
BuiltinNotifiersPlugin in this module registers the built-in ones.
"""

from fenestra.notifications.hookspecs import hookimpl
from fenestra.notifications.notifiers.console import ConsoleNotifier
from fenestra.notifications.notifiers.webhook import WebhookNotifier


class BuiltinNotifiersPlugin:
    """Plugin that registers built-in notifiers."""

    @hookimpl
    def fenestra_get_notifiers(self) -> list[type]:
        """Return built-in notifier classes."""
        return [ConsoleNotifier, WebhookNotifier]


__all__ = ["BuiltinNotifiersPlugin", "ConsoleNotifier", "WebhookNotifier"]
