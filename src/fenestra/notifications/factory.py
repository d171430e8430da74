# src/fenestra/notifications/factory.py
"""Factory functions for creating a NotificationManager from configuration.

1. Discovers notifier classes via the notifier pluggy hooks
2. Instantiates and configures the notifiers named in settings
3. Creates the NotificationManager with them

Usage:
    from fenestra.notifications.factory import create_notification_manager

    manager = create_notification_manager(settings.notifications)
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import pluggy
import structlog

from fenestra.core.config import NotificationSettings
from fenestra.notifications.errors import NotifierError
from fenestra.notifications.hookspecs import PROJECT_NAME, FenestraNotifierSpec
from fenestra.notifications.manager import NotificationManager
from fenestra.notifications.notifiers import BuiltinNotifiersPlugin
from fenestra.notifications.protocols import NotifierProtocol

logger = structlog.get_logger(__name__)


def _resolve_notifier_name(notifier_class: type[NotifierProtocol]) -> str:
    """Notifier name from the class-level ``_name``.

    Raises:
        NotifierError: If the class has no usable ``_name``
    """
    name = notifier_class.__dict__.get("_name")
    if type(name) is not str or name == "":
        raise NotifierError(
            notifier_class.__name__,
            f"Notifier class attribute _name must be a non-empty string, got {name!r}",
        )
    return name


def discover_notifiers(notifier_plugins: Iterable[Any] = ()) -> dict[str, type[NotifierProtocol]]:
    """Build the name -> class registry of available notifiers.

    Args:
        notifier_plugins: Additional plugin objects implementing
            ``fenestra_get_notifiers``

    Raises:
        NotifierError: If a plugin is invalid or two notifiers share a name
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(FenestraNotifierSpec)

    for plugin in [BuiltinNotifiersPlugin(), *notifier_plugins]:
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            raise NotifierError("notification_plugins", f"Invalid notifier plugin {type(plugin).__name__}: {e}") from e

    registry: dict[str, type[NotifierProtocol]] = {}
    for notifiers in plugin_manager.hook.fenestra_get_notifiers():
        for notifier_class in notifiers:
            name = _resolve_notifier_name(notifier_class)
            if name in registry:
                raise NotifierError(
                    name,
                    f"Duplicate notifier name '{name}' discovered: {registry[name].__name__} and {notifier_class.__name__}",
                )
            registry[name] = notifier_class
    return registry


def create_notification_manager(
    settings: NotificationSettings,
    *,
    notifier_plugins: Iterable[Any] = (),
) -> NotificationManager | None:
    """Create a NotificationManager from settings.

    Returns:
        NotificationManager if notifications are enabled, None otherwise.

    Raises:
        NotifierError: If discovery fails, an unknown notifier is configured,
            or a notifier rejects its options.
    """
    if not settings.enabled:
        logger.debug("notifications_disabled")
        return None

    registry = discover_notifiers(notifier_plugins)

    notifiers: list[NotifierProtocol] = []
    for notifier_settings in settings.notifiers:
        try:
            notifier_class = registry[notifier_settings.name]
        except KeyError:
            raise NotifierError(
                notifier_settings.name,
                f"Unknown notifier. Available notifiers: {sorted(registry)}",
            ) from None
        notifier = notifier_class()
        notifier.configure(dict(notifier_settings.options))
        notifiers.append(notifier)
        logger.debug("notifier_configured", notifier=notifier_settings.name, options_keys=sorted(notifier_settings.options))

    if not notifiers:
        logger.warning("notifications_enabled_no_notifiers")

    return NotificationManager(settings, notifiers=notifiers)
