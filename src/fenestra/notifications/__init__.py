"""Operator notifications.

Notifications are a courtesy on top of the run ledger: every event is sent
after the state it reports has been recorded.

Components:
- manager: NotificationManager, background delivery with backpressure
- factory: create_notification_manager() from NotificationSettings
- protocols: NotifierProtocol for implementing notifiers
- hookspecs: pluggy hooks for notifier discovery
- notifiers: Built-in console and webhook notifiers
"""

from fenestra.notifications.errors import NotifierError
from fenestra.notifications.factory import create_notification_manager, discover_notifiers
from fenestra.notifications.manager import NotificationManager
from fenestra.notifications.notifiers import ConsoleNotifier, WebhookNotifier
from fenestra.notifications.protocols import NotifierProtocol

__all__ = [
    "ConsoleNotifier",
    "NotificationManager",
    "NotifierError",
    "NotifierProtocol",
    "WebhookNotifier",
    "create_notification_manager",
    "discover_notifiers",
]
