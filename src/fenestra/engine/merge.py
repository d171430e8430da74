# src/fenestra/engine/merge.py
"""Upsert merge decisions.

For each business key the incoming record is compared with the existing row:

    no existing row                          -> INSERT
    existing row, incoming strictly newer    -> UPDATE
    otherwise (older or same timestamp)      -> IGNORE

Within one batch, several records for the same key collapse to the newest;
equal timestamps are broken by the canonical content hash. The outcome never
depends on arrival order, so two workers merging overlapping batches (a
retried window racing a rerun) converge on the same row.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fenestra.contracts import MergeAction
from fenestra.core.canonical import stable_hash

BusinessKey = tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class MergeDecision:
    """What to do with one incoming record."""

    action: MergeAction
    key: BusinessKey
    record: Mapping[str, Any]
    existing: Mapping[str, Any] | None = None


def _timestamp(record: Mapping[str, Any], field: str) -> datetime:
    value = record[field]
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise TypeError(f"Effective timestamp '{field}' must be a datetime or ISO-8601 string, got {type(value).__name__}")
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def business_key(record: Mapping[str, Any], key_fields: Sequence[str]) -> BusinessKey:
    """Business key of a record.

    Raises:
        KeyError: If a key field is missing
    """
    return tuple(record[f] for f in key_fields)


def _rank(record: Mapping[str, Any], timestamp_field: str) -> tuple[datetime, str]:
    return _timestamp(record, timestamp_field), stable_hash(dict(record))


def newest_per_key(
    records: Iterable[Mapping[str, Any]],
    key_fields: Sequence[str],
    timestamp_field: str,
) -> dict[BusinessKey, Mapping[str, Any]]:
    """Collapse a batch to the newest record per business key."""
    winners: dict[BusinessKey, tuple[tuple[datetime, str], Mapping[str, Any]]] = {}
    for record in records:
        key = business_key(record, key_fields)
        rank = _rank(record, timestamp_field)
        current = winners.get(key)
        if current is None or rank > current[0]:
            winners[key] = (rank, record)
    return {key: record for key, (_, record) in winners.items()}


def decide(
    incoming: Mapping[str, Any],
    existing: Mapping[str, Any] | None,
    timestamp_field: str,
) -> MergeAction:
    """Merge action for one incoming record against the stored row."""
    if existing is None:
        return MergeAction.INSERT
    if _timestamp(incoming, timestamp_field) > _timestamp(existing, timestamp_field):
        return MergeAction.UPDATE
    return MergeAction.IGNORE


def plan_merge(
    existing: Mapping[BusinessKey, Mapping[str, Any]],
    incoming: Iterable[Mapping[str, Any]],
    key_fields: Sequence[str],
    timestamp_field: str,
) -> list[MergeDecision]:
    """Plan an upsert of ``incoming`` into ``existing``.

    Args:
        existing: Stored rows by business key
        incoming: Batch to merge, in any order
        key_fields: Fields forming the business key
        timestamp_field: Effective (change) timestamp field

    Returns:
        One decision per distinct business key in the batch, sorted by key
        so the plan itself is independent of arrival order. Superseded
        duplicates within the batch produce no decision.
    """
    if not key_fields:
        raise ValueError("key_fields must not be empty")
    batch = newest_per_key(incoming, key_fields, timestamp_field)
    decisions: list[MergeDecision] = []
    for key in sorted(batch, key=repr):
        record = batch[key]
        current = existing.get(key)
        decisions.append(MergeDecision(decide(record, current, timestamp_field), key, record, current))
    return decisions


def apply_merge(
    table: dict[BusinessKey, Mapping[str, Any]],
    decisions: Iterable[MergeDecision],
) -> dict[MergeAction, int]:
    """Apply a merge plan to an in-memory table. Returns counts per action."""
    counts = dict.fromkeys(MergeAction, 0)
    for decision in decisions:
        counts[decision.action] += 1
        if decision.action != MergeAction.IGNORE:
            table[decision.key] = dict(decision.record)
    return counts
