# src/fenestra/plugins/units/hookimpl.py
"""Registers the built-in units of work."""

from fenestra.plugins.hookspecs import hookimpl
from fenestra.plugins.units.conditional import ConditionalUnit
from fenestra.plugins.units.decision import DecisionUnit
from fenestra.plugins.units.foreach import ForEachUnit
from fenestra.plugins.units.noop import NoopUnit


class BuiltinUnitsPlugin:
    """Hook implementer for the units shipped with Fenestra."""

    @hookimpl
    def fenestra_get_units(self) -> list[type]:
        return [NoopUnit, ConditionalUnit, DecisionUnit, ForEachUnit]
