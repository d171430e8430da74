# src/fenestra/plugins/protocols.py
"""Plugin protocols defining the unit-of-work contract.

These protocols define what methods plugins must implement.
They're used for type checking, not runtime enforcement (that's pluggy's job).

Lifecycle:
1. __init__(options) - Plugin instantiation, once per configuration snapshot
2. execute(ctx, window_start, window_end, variables) - Once per attempt,
   possibly concurrently for different windows of the same trigger
3. close() - Cleanup when the trigger stops or is reconfigured
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from fenestra.contracts import ErrorClass

if TYPE_CHECKING:
    from fenestra.contracts import AttemptContext, RunVariableBag, WorkResult


@runtime_checkable
class UnitOfWorkProtocol(Protocol):
    """Protocol for unit-of-work plugins.

    A unit of work processes exactly one window per call. It reports its
    outcome as a WorkResult, or raises; raised exceptions are classified by
    ``classify_error``. It must be idempotent: a window may be re-executed
    after a retry, a crash or a manual rerun.

    Example:
        class ExtractOrders(BaseUnitOfWork):
            name = "extract_orders"

            def execute(self, ctx, window_start, window_end, variables):
                rows = fetch_orders(window_start, window_end)
                return WorkResult.success({"rows": len(rows)})
    """

    name: str
    plugin_version: str

    def __init__(self, options: dict[str, Any]) -> None:
        """Initialize with plugin options."""
        ...

    def execute(
        self,
        ctx: "AttemptContext",
        window_start: datetime,
        window_end: datetime,
        variables: "RunVariableBag",
    ) -> "WorkResult":
        """Process the half-open window [window_start, window_end)."""
        ...

    def classify_error(self, error: BaseException) -> ErrorClass:
        """TRANSIENT or PERMANENT for an exception raised by execute()."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...
