# src/fenestra/core/canonical.py
"""
Canonical JSON serialization for deterministic hashing.

Two-phase approach:
1. Normalize: Convert datetimes, timedeltas, enums, Decimals and bytes to
   JSON-safe primitives (our code)
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

Used for config snapshot hashes, the RunVariableBag inputs/outputs recorded
per attempt, and the upsert merge tie-break.

IMPORTANT: NaN and Infinity are strictly REJECTED, not silently converted.
"""

from __future__ import annotations

import base64
import hashlib
import math
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

import rfc8785

# Version string stored with every config snapshot for hash verification
CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to a JSON-safe primitive.

    Raises:
        ValueError: If value is a non-finite float or Decimal
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot canonicalize non-finite float: {obj}. Use None for missing values, not NaN.")
        return obj

    # Enums before primitives: StrEnum is also a str
    if isinstance(obj, Enum):
        return obj.value

    if obj is None or isinstance(obj, str | int | bool):
        return obj

    if isinstance(obj, datetime):
        # Naive datetimes are read as UTC (explicit policy)
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=UTC)
        return obj.astimezone(UTC).isoformat()

    if isinstance(obj, timedelta):
        return obj.total_seconds()

    if isinstance(obj, bytes):
        return {"__bytes__": base64.b64encode(obj).decode("ascii")}

    if isinstance(obj, Decimal):
        if not obj.is_finite():
            raise ValueError(f"Cannot canonicalize non-finite Decimal: {obj}. Use None for missing values, not NaN/Infinity.")
        return str(obj)

    return obj


def _normalize_for_canonical(data: Any) -> Any:
    """Recursively normalize a data structure for canonical JSON."""
    if isinstance(data, dict):
        return {str(k): _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [_normalize_for_canonical(v) for v in data]
    return _normalize_value(data)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON (no whitespace, sorted keys).

    Raises:
        ValueError: If data contains NaN, Infinity, or other non-finite values
        TypeError: If data contains types that cannot be serialized
    """
    normalized = _normalize_for_canonical(obj)
    result: bytes = rfc8785.dumps(normalized)
    return result.decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of ``obj``.

    The algorithm is the one named by CANONICAL_VERSION; change both together.
    """
    canonical = canonical_json(obj)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
