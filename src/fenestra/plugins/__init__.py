"""Unit-of-work plugin system via pluggy.

- Protocols: Type contract for unit-of-work implementations
- Base classes: BaseUnitOfWork, CompositeUnit, IncrementalUnit, UpsertUnit
- Manager: Plugin discovery, registration and instantiation
- Hookspecs: pluggy hook definitions
"""

from fenestra.plugins.base import BaseUnitOfWork, CompositeUnit, IncrementalUnit, UpsertUnit
from fenestra.plugins.config_base import PluginConfig, PluginConfigError
from fenestra.plugins.hookspecs import hookimpl
from fenestra.plugins.manager import PluginManager, PluginNotFoundError
from fenestra.plugins.protocols import UnitOfWorkProtocol

__all__ = [
    "BaseUnitOfWork",
    "CompositeUnit",
    "IncrementalUnit",
    "PluginConfig",
    "PluginConfigError",
    "PluginManager",
    "PluginNotFoundError",
    "UnitOfWorkProtocol",
    "UpsertUnit",
    "hookimpl",
]
