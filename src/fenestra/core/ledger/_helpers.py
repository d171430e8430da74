"""Common helper functions for ledger modules."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import TypeVar, overload

E = TypeVar("E", bound=Enum)


def generate_id() -> str:
    """Generate a unique ID (UUID4 hex)."""
    return uuid.uuid4().hex


def coerce_enum(value: str | E, enum_type: type[E]) -> E:
    """Coerce a string or enum value to the target enum type.

    The ledger is OUR data. Invalid values CRASH - no silent coercion.

    Raises:
        ValueError: If string is not a valid enum value
    """
    if isinstance(value, enum_type):
        return value
    return enum_type(value)


@overload
def as_utc(value: datetime) -> datetime: ...


@overload
def as_utc(value: None) -> None: ...


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC.

    Used in both directions: before binding (so SQLite stores UTC wall time)
    and after loading (SQLite returns naive values, which are UTC by contract).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
