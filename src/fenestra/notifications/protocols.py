# src/fenestra/notifications/protocols.py
"""Protocol definition for notifiers.

Notifiers deliver operator notifications (window exhausted, circuit opened)
to wherever operators look: a terminal, a chat webhook, an incident tool.
"""

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from fenestra.contracts import NotificationEvent


@runtime_checkable
class NotifierProtocol(Protocol):
    """Protocol for notifiers.

    Lifecycle:
        1. Discovery: fenestra_get_notifiers hook returns notifier classes
        2. Instantiation: the factory creates instances with no arguments
        3. Configuration: configure() called with the notifier's options
        4. Operation: send() called for each event from the export thread
        5. Shutdown: flush() then close()

    Error handling:
        - configure() MUST raise NotifierError on invalid config
        - send() may raise; the manager isolates and counts the failure
        - close() MUST be idempotent
    """

    @property
    def name(self) -> str:
        """Notifier name used in configuration (notifications.notifiers[].name)."""
        ...

    def configure(self, options: dict[str, Any]) -> None: ...

    def send(self, event: "NotificationEvent") -> None:
        """Deliver one event. Called only from the export thread."""
        ...

    def flush(self) -> None: ...

    def close(self) -> None: ...
