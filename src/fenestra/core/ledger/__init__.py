"""Run ledger: durable record of windows, attempts and state transitions.

The ledger is the single source of truth for window state. Everything the
scheduler decides is derived from it, so a restarted process continues
exactly where the previous one stopped.
"""

from fenestra.core.ledger.database import LedgerDB, SchemaCompatibilityError
from fenestra.core.ledger.recorder import RunLedger
from fenestra.core.ledger.schema import (
    attempts_table,
    circuit_breakers_table,
    config_snapshots_table,
    metadata,
    trigger_cursors_table,
    watermarks_table,
    window_events_table,
    windows_table,
)

__all__ = [
    "LedgerDB",
    "RunLedger",
    "SchemaCompatibilityError",
    "attempts_table",
    "circuit_breakers_table",
    "config_snapshots_table",
    "metadata",
    "trigger_cursors_table",
    "watermarks_table",
    "window_events_table",
    "windows_table",
]
