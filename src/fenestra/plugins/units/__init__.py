"""Built-in units of work: noop and the conditional, decision and foreach combinators."""

from fenestra.plugins.units.conditional import ConditionalUnit
from fenestra.plugins.units.decision import DecisionUnit
from fenestra.plugins.units.foreach import FanOutResult, ForEachUnit
from fenestra.plugins.units.noop import NoopUnit

__all__ = ["ConditionalUnit", "DecisionUnit", "FanOutResult", "ForEachUnit", "NoopUnit"]
