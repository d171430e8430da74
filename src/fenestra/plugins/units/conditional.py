# src/fenestra/plugins/units/conditional.py
"""ConditionalUnit - if/else over a boolean expression.

Example YAML:
    unit_of_work:
      plugin: conditional
      options:
        condition: "region == 'eu' and row_limit > 0"
        then:
          plugin: load_eu
        else:
          plugin: noop
"""

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from fenestra.contracts import AttemptContext, RunVariableBag, WorkResult
from fenestra.core.config import UnitOfWorkSettings
from fenestra.engine.expression_parser import ExpressionParser, ExpressionSecurityError, ExpressionSyntaxError
from fenestra.plugins.base import BaseUnitOfWork, CompositeUnit, UnitFactory
from fenestra.plugins.config_base import PluginConfig


def parse_condition(value: str) -> str:
    """Validate that ``value`` is a safe boolean expression.

    Raises:
        ValueError: If the expression is malformed, forbidden, or not boolean
    """
    try:
        parser = ExpressionParser(value)
    except (ExpressionSyntaxError, ExpressionSecurityError) as e:
        raise ValueError(f"Invalid condition {value!r}: {e}") from e
    if not parser.is_boolean_expression():
        raise ValueError(f"Condition must be a boolean expression, got: {value!r}")
    return value


class ConditionalOptions(PluginConfig):
    """Options for the conditional unit."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    condition: str = Field(description="Boolean expression over the run variables")
    then: UnitOfWorkSettings = Field(description="Unit to run when the condition holds")
    otherwise: UnitOfWorkSettings | None = Field(default=None, alias="else", description="Unit to run otherwise")

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v: str) -> str:
        return parse_condition(v)


class ConditionalUnit(CompositeUnit):
    """Runs ``then`` when the condition holds, ``else`` otherwise.

    Without an ``else`` branch a false condition succeeds with no work done.
    The chosen branch is reported as the ``branch`` output.
    """

    name = "conditional"
    plugin_version = "1.0.0"

    def __init__(self, options: dict[str, Any], *, build: UnitFactory) -> None:
        super().__init__(options, build=build)
        self._config = ConditionalOptions.from_dict(options)
        self._condition = ExpressionParser(self._config.condition)
        self._then = self._child(self._config.then)
        self._else: BaseUnitOfWork | None = self._child(self._config.otherwise) if self._config.otherwise is not None else None

    def execute(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        if self._condition.evaluate(variables):
            branch, unit = "then", self._then
        else:
            branch, unit = "else", self._else
        if unit is None:
            return WorkResult.success({"branch": branch})
        result = self._run_child(unit, ctx, window_start, window_end, variables)
        if not result.succeeded:
            return result
        return WorkResult.success({**result.outputs, "branch": branch})
