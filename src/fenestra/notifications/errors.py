# src/fenestra/notifications/errors.py
"""Notification-specific exceptions.

These are for notifier setup errors only. Delivery failures are logged by
the NotificationManager and never raised into the scheduler.
"""


class NotifierError(Exception):
    """Raised when a notifier cannot be discovered or configured.

    Attributes:
        notifier_name: Name of the notifier that failed
        message: Human-readable error description
    """

    def __init__(self, notifier_name: str, message: str) -> None:
        self.notifier_name = notifier_name
        self.message = message
        super().__init__(f"Notifier '{notifier_name}' failed: {message}")
