# src/fenestra/plugins/base.py
"""Base classes for unit-of-work implementations.

Plugins MUST subclass BaseUnitOfWork (or CompositeUnit for combinators that
wrap other units). The protocol in fenestra.plugins.protocols exists for type
checking only.

Units are instantiated once per configuration snapshot and then called once
per attempt, possibly from several worker threads at the same time when a
trigger's max_concurrency is above 1. Keep per-attempt state on the stack,
not on ``self``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from fenestra.contracts import ErrorClass, MergeAction, PermanentError, WorkResult
from fenestra.engine.merge import business_key, plan_merge
from fenestra.engine.retry import classify_exception

if TYPE_CHECKING:
    from fenestra.contracts import AttemptContext, RunVariableBag, VariableValue
    from fenestra.core.config import UnitOfWorkSettings
    from fenestra.engine.merge import BusinessKey, MergeDecision

logger = structlog.get_logger(__name__)

UnitFactory = Callable[["UnitOfWorkSettings"], "BaseUnitOfWork"]


class BaseUnitOfWork(ABC):
    """Base class for all units of work.

    Subclasses set ``name`` and implement ``execute``. Raising from execute is
    allowed; the exception is classified with ``classify_error``, which by
    default treats TransientError, TimeoutError and ConnectionError as
    TRANSIENT and everything else as PERMANENT.

    Example:
        class PingWarehouse(BaseUnitOfWork):
            name = "ping_warehouse"

            def execute(self, ctx, window_start, window_end, variables):
                self._client.ping()
                return WorkResult.success()
    """

    name: str
    plugin_version: str = "0.0.0"

    def __init__(self, options: dict[str, Any]) -> None:
        self.options = dict(options)

    @abstractmethod
    def execute(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        """Process the half-open window [window_start, window_end)."""
        ...

    def classify_error(self, error: BaseException) -> ErrorClass:
        return classify_exception(error)

    def close(self) -> None:  # noqa: B027 - optional hook
        """Release resources. Default does nothing."""


class CompositeUnit(BaseUnitOfWork):
    """Base class for combinators that wrap other units.

    The plugin manager constructs composites with a ``build`` callable so
    they can instantiate their children from nested UnitOfWorkSettings.
    """

    def __init__(self, options: dict[str, Any], *, build: UnitFactory) -> None:
        super().__init__(options)
        self._build = build
        self._children: list[BaseUnitOfWork] = []

    def _child(self, settings: UnitOfWorkSettings) -> BaseUnitOfWork:
        unit = self._build(settings)
        self._children.append(unit)
        return unit

    def _run_child(
        self,
        unit: BaseUnitOfWork,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        """Run a child, turning anything it raises into a failed WorkResult."""
        try:
            return unit.execute(ctx, window_start, window_end, variables)
        except Exception as e:
            return WorkResult.failure(unit.classify_error(e), f"{type(e).__name__}: {e}")

    def close(self) -> None:
        for child in self._children:
            child.close()


def _as_aware(value: Any, field: str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise PermanentError(f"Record field '{field}' is not a timestamp: {value!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class IncrementalUnit(BaseUnitOfWork):
    """Watermark-bounded incremental extraction.

    ``extract`` fetches the records whose change timestamp falls in
    [window_start, window_end); ``load`` hands them to the sink. Records the
    source returns outside the window are dropped here, so a sloppy source
    query never duplicates rows across windows.

    The unit does not touch the watermark. The executor advances it to
    window_end only after the window is recorded SUCCEEDED, so a failure in
    either extract or load leaves the watermark where it was. Configure the
    trigger's ``watermark_key`` to enable this.

    ``ctx.watermark`` carries the current high-water mark (None before the
    first successful window) for sources that want to log or sanity-check it.
    """

    timestamp_field: str = "updated_at"

    @abstractmethod
    def extract(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> Iterable[Mapping[str, Any]]:
        """Fetch records changed in [window_start, window_end)."""
        ...

    @abstractmethod
    def load(self, ctx: AttemptContext, records: list[dict[str, Any]]) -> Mapping[str, VariableValue] | None:
        """Write extracted records to the sink. Must be idempotent."""
        ...

    def record_timestamp(self, record: Mapping[str, Any]) -> datetime:
        """Change timestamp of a record, as an aware UTC datetime.

        Raises:
            PermanentError: If the record has no usable timestamp
        """
        try:
            value = record[self.timestamp_field]
        except KeyError:
            raise PermanentError(f"Record has no '{self.timestamp_field}' field") from None
        return _as_aware(value, self.timestamp_field)

    def execute(
        self,
        ctx: AttemptContext,
        window_start: datetime,
        window_end: datetime,
        variables: RunVariableBag,
    ) -> WorkResult:
        records: list[dict[str, Any]] = []
        dropped = 0
        for record in self.extract(ctx, window_start, window_end, variables):
            if window_start <= self.record_timestamp(record) < window_end:
                records.append(dict(record))
            else:
                dropped += 1
        if dropped:
            logger.warning(
                "records_outside_window",
                unit=self.name,
                trigger_id=ctx.trigger_id,
                window_start=window_start.isoformat(),
                dropped=dropped,
            )
        outputs: dict[str, VariableValue] = {"extracted": len(records), "dropped": dropped}
        loaded = self.load(ctx, records)
        if loaded:
            outputs.update(loaded)
        return WorkResult.success(outputs)


class UpsertUnit(IncrementalUnit):
    """Incremental extraction that upserts into a keyed target.

    ``load`` collapses the window's records to the newest per business key,
    compares each with the stored row and writes only the inserts and
    updates. Which record wins is decided by the effective timestamp, never
    by arrival order, so a retried window racing a rerun converges on the
    same rows.

    Subclasses set ``key_fields`` and implement ``fetch_existing`` and
    ``write``.
    """

    key_fields: Sequence[str] = ()

    @abstractmethod
    def fetch_existing(self, ctx: AttemptContext, keys: list[BusinessKey]) -> Mapping[BusinessKey, Mapping[str, Any]]:
        """Stored rows for ``keys``. Keys with no stored row are left out."""
        ...

    @abstractmethod
    def write(self, ctx: AttemptContext, changes: list[MergeDecision]) -> None:
        """Persist INSERT and UPDATE decisions. Must be idempotent."""
        ...

    def load(self, ctx: AttemptContext, records: list[dict[str, Any]]) -> Mapping[str, VariableValue] | None:
        if not self.key_fields:
            raise PermanentError(f"Unit '{self.name}' has no key_fields")
        try:
            keys = sorted({business_key(record, self.key_fields) for record in records}, key=repr)
        except KeyError as e:
            raise PermanentError(f"Record has no business key field {e}") from None
        existing = self.fetch_existing(ctx, keys) if keys else {}
        decisions = plan_merge(existing, records, self.key_fields, self.timestamp_field)
        changes = [d for d in decisions if d.action != MergeAction.IGNORE]
        if changes:
            self.write(ctx, changes)
        counts = Counter(d.action for d in decisions)
        return {
            "inserted": counts[MergeAction.INSERT],
            "updated": counts[MergeAction.UPDATE],
            "ignored": counts[MergeAction.IGNORE],
            "superseded": len(records) - len(decisions),
        }
