# src/fenestra/plugins/units/decision.py
"""DecisionUnit - first-match decision table.

Rules are tried in order; the first whose ``when`` expression is true picks
the unit to run. Rule expressions are parsed once, at construction, so a bad
table fails configuration loading rather than an attempt.

Example YAML:
    unit_of_work:
      plugin: decision
      options:
        rules:
          - when: "row_count == 0"
            unit: {plugin: noop}
          - when: "row_count > 100000"
            unit: {plugin: bulk_load}
        default:
          plugin: row_load
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from fenestra.contracts import AttemptContext, RunVariableBag, WorkResult
from fenestra.core.config import UnitOfWorkSettings
from fenestra.engine.expression_parser import ExpressionParser
from fenestra.plugins.base import BaseUnitOfWork, CompositeUnit, UnitFactory
from fenestra.plugins.config_base import PluginConfig
from fenestra.plugins.units.conditional import parse_condition


class DecisionRuleOptions(PluginConfig):
    when: str
    unit: UnitOfWorkSettings
    label: str | None = None

    @field_validator("when")
    @classmethod
    def validate_when(cls, v: str) -> str:
        return parse_condition(v)


class DecisionOptions(PluginConfig):
    """Options for the decision unit."""

    rules: list[DecisionRuleOptions] = Field(min_length=1)
    default: UnitOfWorkSettings | None = None


@dataclass(frozen=True, slots=True)
class _Rule:
    label: str
    condition: ExpressionParser
    unit: BaseUnitOfWork


class DecisionUnit(CompositeUnit):
    """Runs the unit of the first matching rule, or the default.

    No match and no default succeeds with ``rule`` reported as empty.
    """

    name = "decision"
    plugin_version = "1.0.0"

    def __init__(self, options: dict[str, Any], *, build: UnitFactory) -> None:
        super().__init__(options, build=build)
        self._config = DecisionOptions.from_dict(options)
        self._rules = [
            _Rule(
                label=rule.label or f"rule_{index}",
                condition=ExpressionParser(rule.when),
                unit=self._child(rule.unit),
            )
            for index, rule in enumerate(self._config.rules)
        ]
        self._default = self._child(self._config.default) if self._config.default is not None else None

    def select(self, variables: RunVariableBag) -> tuple[str, BaseUnitOfWork | None]:
        """Label and unit of the first matching rule."""
        for rule in self._rules:
            if rule.condition.evaluate(variables):
                return rule.label, rule.unit
        return "default", self._default

    def execute(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        label, unit = self.select(variables)
        if unit is None:
            return WorkResult.success({"rule": ""})
        result = self._run_child(unit, ctx, window_start, window_end, variables)
        if not result.succeeded:
            return result
        return WorkResult.success({**result.outputs, "rule": label})
