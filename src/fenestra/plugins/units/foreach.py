# src/fenestra/plugins/units/foreach.py
"""ForEachUnit - fan-out over an item list.

The ``items`` expression is evaluated against the run variables and must
yield a list. The child unit runs once per item on a bounded thread pool,
with the item bound to ``item_variable`` (and its position to
``item_index``) in a copy of the variable bag.

Failures are isolated per item: one failing item never cancels the others.
The aggregate is reported as FanOutStatus:

    EMPTY          no items; succeeds
    ALL_SUCCEEDED  succeeds
    PARTIAL        fails, unless allow_partial is set
    ALL_FAILED     fails

A failed fan-out is TRANSIENT if any failed item was TRANSIENT, so the
window is retried; the child must be idempotent per item.

Example YAML:
    unit_of_work:
      plugin: foreach
      options:
        items: "tables"
        item_variable: table
        max_parallel: 4
        unit:
          plugin: copy_table
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import Field, field_validator

from fenestra.contracts import (
    AttemptContext,
    ErrorClass,
    FanOutStatus,
    PermanentError,
    RunVariableBag,
    VariableValue,
    WorkResult,
)
from fenestra.core.config import UnitOfWorkSettings
from fenestra.engine.expression_parser import ExpressionParser, ExpressionSecurityError, ExpressionSyntaxError
from fenestra.plugins.base import CompositeUnit, UnitFactory
from fenestra.plugins.config_base import PluginConfig

logger = structlog.get_logger(__name__)


class ForEachOptions(PluginConfig):
    """Options for the foreach unit."""

    items: str = Field(description="Expression yielding the list of items")
    unit: UnitOfWorkSettings = Field(description="Unit to run per item")
    item_variable: str = Field(default="item", pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    max_parallel: int = Field(default=4, ge=1, description="Items processed at once")
    allow_partial: bool = Field(default=False, description="Treat PARTIAL as success")

    @field_validator("items")
    @classmethod
    def validate_items(cls, v: str) -> str:
        try:
            ExpressionParser(v)
        except (ExpressionSyntaxError, ExpressionSecurityError) as e:
            raise ValueError(f"Invalid items expression {v!r}: {e}") from e
        return v


@dataclass(frozen=True, slots=True)
class FanOutResult:
    """Aggregate outcome of a fan-out, with per-item results in item order."""

    status: FanOutStatus
    results: tuple[WorkResult, ...]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @classmethod
    def from_results(cls, results: list[WorkResult]) -> "FanOutResult":
        if not results:
            status = FanOutStatus.EMPTY
        elif all(r.succeeded for r in results):
            status = FanOutStatus.ALL_SUCCEEDED
        elif any(r.succeeded for r in results):
            status = FanOutStatus.PARTIAL
        else:
            status = FanOutStatus.ALL_FAILED
        return cls(status=status, results=tuple(results))


class ForEachUnit(CompositeUnit):
    """Runs the child unit once per item with bounded parallelism."""

    name = "foreach"
    plugin_version = "1.0.0"

    def __init__(self, options: dict[str, Any], *, build: UnitFactory) -> None:
        super().__init__(options, build=build)
        self._config = ForEachOptions.from_dict(options)
        self._items = ExpressionParser(self._config.items)
        self._unit = self._child(self._config.unit)

    def resolve_items(self, variables: RunVariableBag) -> list[Any]:
        """Evaluate the item expression.

        Raises:
            PermanentError: If the expression does not yield a list
        """
        items = self._items.evaluate(variables)
        if not isinstance(items, list):
            raise PermanentError(f"foreach items expression {self._items.expression!r} yielded {type(items).__name__}, not a list")
        return items

    def fan_out(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> FanOutResult:
        """Run every item and aggregate, never raising for a single item."""
        items = self.resolve_items(variables)
        if not items:
            return FanOutResult.from_results([])

        def run_item(index: int, item: Any) -> WorkResult:
            bag: RunVariableBag = {**variables, self._config.item_variable: item, "item_index": index}
            return self._run_child(self._unit, ctx, window_start, window_end, bag)

        workers = min(self._config.max_parallel, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"foreach-{ctx.trigger_id}") as pool:
            futures = [pool.submit(run_item, index, item) for index, item in enumerate(items)]
            # _run_child converts unit exceptions, so result() only raises on a bug here
            results = [future.result() for future in futures]
        return FanOutResult.from_results(results)

    def execute(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        fan_out = self.fan_out(ctx, window_start, window_end, variables)
        errors = [r.message or "" for r in fan_out.results if not r.succeeded]
        outputs: dict[str, VariableValue] = {
            "status": fan_out.status.value,
            "succeeded": fan_out.succeeded,
            "failed": fan_out.failed,
        }
        if errors:
            outputs["errors"] = errors
            logger.warning(
                "foreach_items_failed",
                trigger_id=ctx.trigger_id,
                window_start=window_start.isoformat(),
                status=fan_out.status.value,
                failed=fan_out.failed,
                total=len(fan_out.results),
            )

        if fan_out.status in (FanOutStatus.EMPTY, FanOutStatus.ALL_SUCCEEDED):
            return WorkResult.success(outputs)
        if fan_out.status == FanOutStatus.PARTIAL and self._config.allow_partial:
            return WorkResult.success(outputs)

        transient = any(r.error_class == ErrorClass.TRANSIENT for r in fan_out.results if not r.succeeded)
        error_class = ErrorClass.TRANSIENT if transient else ErrorClass.PERMANENT
        summary = f"foreach {fan_out.status.value}: {fan_out.failed}/{len(fan_out.results)} item(s) failed; first: {errors[0]}"
        return WorkResult(succeeded=False, error_class=error_class, message=summary, outputs=outputs)
