# src/fenestra/core/watermark.py
"""Watermark store: durable source_key -> high-water-mark mapping.

A watermark is the highest change-timestamp durably processed for a source.
Incremental extraction units read it to bound their query; the engine
advances it to the window end only AFTER the window is recorded SUCCEEDED.

Advancement is monotonic and compare-and-set on the row version, so two
windows finishing concurrently can never move a watermark backwards.

Values are stored as text. Datetimes are encoded in a fixed-width UTC form
(2026-01-01T10:00:00.000000Z), which makes lexicographic order equal to
chronological order. Other tokens are compared as strings; callers choosing
their own tokens must make them sortable.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from fenestra.contracts import WatermarkRecord
from fenestra.core.clock import DEFAULT_CLOCK
from fenestra.core.ledger._database_ops import DatabaseOps
from fenestra.core.ledger._helpers import as_utc
from fenestra.core.ledger.repositories import WatermarkRepository
from fenestra.core.ledger.schema import watermarks_table

if TYPE_CHECKING:
    from fenestra.core.clock import Clock
    from fenestra.core.ledger.database import LedgerDB

logger = structlog.get_logger(__name__)

_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Bound on CAS retries; each loss means someone else moved the mark forward
_MAX_CAS_ROUNDS = 16


def encode_watermark(value: datetime | str) -> str:
    """Encode a watermark value as sortable text."""
    if isinstance(value, datetime):
        return as_utc(value).strftime(_DATETIME_FORMAT)
    return value


def decode_datetime(value: str) -> datetime:
    """Decode a datetime watermark written by encode_watermark()."""
    return datetime.strptime(value, _DATETIME_FORMAT).replace(tzinfo=UTC)


class WatermarkStore:
    """Monotonic, compare-and-set watermark storage in the ledger database."""

    def __init__(self, db: LedgerDB, *, clock: Clock | None = None) -> None:
        self._ops = DatabaseOps(db)
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._repo = WatermarkRepository()

    def get(self, source_key: str) -> WatermarkRecord | None:
        row = self._ops.execute_fetchone(select(watermarks_table).where(watermarks_table.c.source_key == source_key))
        return self._repo.load(row) if row is not None else None

    def get_datetime(self, source_key: str) -> datetime | None:
        """Current watermark as a datetime, or None if never set."""
        record = self.get(source_key)
        return decode_datetime(record.value) if record is not None else None

    def list_all(self) -> list[WatermarkRecord]:
        rows = self._ops.execute_fetchall(select(watermarks_table).order_by(watermarks_table.c.source_key))
        return [self._repo.load(row) for row in rows]

    def advance(
        self,
        source_key: str,
        value: datetime | str,
        *,
        trigger_id: str | None = None,
        window_start: datetime | None = None,
    ) -> bool:
        """Move the watermark forward to ``value`` if it is higher.

        Returns:
            True if the watermark moved, False if it was already at or past value

        Raises:
            RuntimeError: If the compare-and-set keeps losing (pathological contention)
        """
        encoded = encode_watermark(value)
        for _ in range(_MAX_CAS_ROUNDS):
            current = self.get(source_key)
            timestamp = as_utc(self._clock.now())
            if current is None:
                try:
                    self._ops.execute_insert(
                        watermarks_table.insert().values(
                            source_key=source_key,
                            value=encoded,
                            version=1,
                            updated_at=timestamp,
                            trigger_id=trigger_id,
                            window_start=as_utc(window_start),
                        )
                    )
                except IntegrityError:
                    continue  # Someone created it first; re-read and compare
                logger.info("watermark_initialized", source_key=source_key, value=encoded, trigger_id=trigger_id)
                return True

            if encoded <= current.value:
                logger.debug("watermark_not_advanced", source_key=source_key, current=current.value, offered=encoded)
                return False

            moved = self._ops.execute_cas(
                update(watermarks_table)
                .where(
                    watermarks_table.c.source_key == source_key,
                    watermarks_table.c.version == current.version,
                )
                .values(
                    value=encoded,
                    version=current.version + 1,
                    updated_at=timestamp,
                    trigger_id=trigger_id,
                    window_start=as_utc(window_start),
                )
            )
            if moved:
                logger.info(
                    "watermark_advanced",
                    source_key=source_key,
                    previous=current.value,
                    value=encoded,
                    trigger_id=trigger_id,
                )
                return True
        raise RuntimeError(f"Watermark '{source_key}' compare-and-set lost {_MAX_CAS_ROUNDS} times in a row")
