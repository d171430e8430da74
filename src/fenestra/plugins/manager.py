# src/fenestra/plugins/manager.py
"""Plugin manager for discovery, registration, and instantiation.

Uses pluggy for hook-based plugin registration.
"""

from typing import Any

import pluggy

from fenestra.core.config import UnitOfWorkSettings
from fenestra.plugins.base import BaseUnitOfWork, CompositeUnit
from fenestra.plugins.hookspecs import PROJECT_NAME, FenestraUnitSpec


class PluginNotFoundError(LookupError):
    """Raised when a configured plugin name is not registered."""

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(f"Unknown unit-of-work plugin '{name}'. Available: {available}")


class PluginManager:
    """Manages unit-of-work plugin discovery, registration, and lookup.

    Usage:
        manager = PluginManager()
        manager.register_builtin_plugins()
        manager.register(MyPlugin())

        unit = manager.create_unit(trigger.unit_of_work)
    """

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)

        # Register hookspecs
        self._pm.add_hookspecs(FenestraUnitSpec)

        # Cache - maps name to plugin class for duplicate detection
        self._units: dict[str, type[BaseUnitOfWork]] = {}

    def register_builtin_plugins(self) -> None:
        """Register the built-in units (noop and the combinators)."""
        from fenestra.plugins.units.hookimpl import BuiltinUnitsPlugin

        self.register(BuiltinUnitsPlugin())

    def register(self, plugin: Any) -> None:
        """Register a plugin.

        Args:
            plugin: Plugin instance implementing hook methods
        """
        self._pm.register(plugin)
        self._refresh_caches()

    def _refresh_caches(self) -> None:
        """Refresh plugin caches from hooks.

        Raises:
            ValueError: If a plugin with the same name is already registered
        """
        new_units: dict[str, type[BaseUnitOfWork]] = {}
        for units in self._pm.hook.fenestra_get_units():
            for cls in units:
                if not (isinstance(cls, type) and issubclass(cls, BaseUnitOfWork)):
                    raise TypeError(f"Unit plugin {cls!r} must subclass BaseUnitOfWork")
                name = cls.name
                if name in new_units:
                    raise ValueError(f"Duplicate unit plugin name: '{name}'. Already registered by {new_units[name].__name__}")
                new_units[name] = cls
        self._units = new_units

    def get_units(self) -> list[type[BaseUnitOfWork]]:
        """Get all registered unit classes."""
        return list(self._units.values())

    def get_unit_by_name(self, name: str) -> type[BaseUnitOfWork] | None:
        """Get unit plugin by name."""
        return self._units.get(name)

    def create_unit(self, settings: UnitOfWorkSettings) -> BaseUnitOfWork:
        """Instantiate a unit of work, recursively for combinators.

        Raises:
            PluginNotFoundError: If the plugin (or a nested one) is not registered
            PluginConfigError: If the options are invalid
        """
        cls = self._units.get(settings.plugin)
        if cls is None:
            raise PluginNotFoundError(settings.plugin, sorted(self._units))
        if issubclass(cls, CompositeUnit):
            return cls(dict(settings.options), build=self.create_unit)
        return cls(dict(settings.options))
