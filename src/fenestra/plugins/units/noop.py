# src/fenestra/plugins/units/noop.py
"""NoopUnit - succeeds without doing anything.

Useful as a placeholder while wiring triggers and dependencies, and as the
empty branch of a conditional.
"""

from datetime import datetime
from typing import Any

from pydantic import Field

from fenestra.contracts import AttemptContext, RunVariableBag, VariableValue, WorkResult
from fenestra.plugins.base import BaseUnitOfWork
from fenestra.plugins.config_base import PluginConfig


class NoopOptions(PluginConfig):
    """Options for the noop unit."""

    outputs: dict[str, VariableValue] = Field(default_factory=dict, description="Static outputs to report")


class NoopUnit(BaseUnitOfWork):
    """Reports success, echoing its configured outputs."""

    name = "noop"
    plugin_version = "1.0.0"

    def __init__(self, options: dict[str, Any]) -> None:
        super().__init__(options)
        self._config = NoopOptions.from_dict(options)

    def execute(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        return WorkResult.success(self._config.outputs)
