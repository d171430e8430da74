# src/fenestra/plugins/hookspecs.py
"""pluggy hook specifications for Fenestra unit-of-work plugins.

Plugins implement these hooks to register themselves with the framework.
The plugin manager calls these hooks during discovery.

Usage (implementing a plugin):
    from fenestra.plugins.hookspecs import hookimpl

    class MyPlugin:
        @hookimpl  # NOT @hookspec - that's for defining specs
        def fenestra_get_units(self):
            return [ExtractOrders]

Note: @hookspec defines the hook interface (done here).
      @hookimpl marks plugin implementations of those hooks.
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from fenestra.plugins.protocols import UnitOfWorkProtocol

# Project name for pluggy
PROJECT_NAME = "fenestra"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class FenestraUnitSpec:
    """Hook specifications for unit-of-work plugins."""

    @hookspec
    def fenestra_get_units(self) -> list[type["UnitOfWorkProtocol"]]:  # type: ignore[empty-body]
        """Return unit-of-work plugin classes.

        Returns:
            List of unit-of-work classes (not instances)
        """
