# src/fenestra/core/ledger/schema.py
"""SQLAlchemy table definitions for the run ledger.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends.

All DateTime columns hold UTC. SQLite drops tzinfo on the way in, so the
repository layer re-attaches UTC when loading rows.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKeyConstraint,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()

# === Windows ===

windows_table = Table(
    "windows",
    metadata,
    Column("trigger_id", String(128), nullable=False),
    Column("window_start", DateTime(timezone=True), nullable=False),
    Column("window_end", DateTime(timezone=True), nullable=False),
    Column("state", String(32), nullable=False),  # WindowState
    Column("attempt", Integer, nullable=False, default=0),  # Attempts consumed in the current budget
    # Compare-and-set guard: every write bumps version and checks the old one
    Column("version", Integer, nullable=False, default=1),
    Column("next_attempt_at", DateTime(timezone=True)),  # Earliest time the scheduler may dispatch
    Column("last_error", Text),
    Column("last_error_class", String(32)),  # ErrorClass
    Column("dispatched_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),  # Set on SUCCEEDED / FAILED_EXHAUSTED
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("trigger_id", "window_start"),
    CheckConstraint("window_end > window_start", name="ck_windows_bounds"),
    CheckConstraint("attempt >= 0", name="ck_windows_attempt"),
)

Index("ix_windows_trigger_state", windows_table.c.trigger_id, windows_table.c.state)
Index("ix_windows_state_completed", windows_table.c.state, windows_table.c.completed_at)

# === Attempts (append-only; outcome columns filled in once on completion) ===

attempts_table = Table(
    "attempts",
    metadata,
    Column("attempt_id", String(64), primary_key=True),
    Column("trigger_id", String(128), nullable=False),
    Column("window_start", DateTime(timezone=True), nullable=False),
    Column("attempt_number", Integer, nullable=False),  # 1-indexed within the budget
    Column("service_key", String(128)),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True)),
    Column("outcome", String(32)),  # AttemptOutcome, NULL while in flight
    Column("duration_ms", Float),
    Column("error_class", String(32)),  # ErrorClass
    Column("error_json", Text),  # ErrorDetail
    # RunVariableBag as seen by the unit of work, and what it reported back
    Column("inputs_json", Text),
    Column("outputs_json", Text),
    # Planned retry time, recorded BEFORE the backoff sleep
    Column("next_retry_at", DateTime(timezone=True)),
    ForeignKeyConstraint(["trigger_id", "window_start"], ["windows.trigger_id", "windows.window_start"]),
)

Index("ix_attempts_window", attempts_table.c.trigger_id, attempts_table.c.window_start)

# === Window state transitions (append-only) ===

window_events_table = Table(
    "window_events",
    metadata,
    # Integer sequence: events sort in the order they were written
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("trigger_id", String(128), nullable=False),
    Column("window_start", DateTime(timezone=True), nullable=False),
    Column("from_state", String(32)),  # NULL on creation
    Column("to_state", String(32), nullable=False),
    Column("reason", String(32), nullable=False),  # TransitionReason
    Column("detail", Text),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    ForeignKeyConstraint(["trigger_id", "window_start"], ["windows.trigger_id", "windows.window_start"]),
)

Index("ix_window_events_window", window_events_table.c.trigger_id, window_events_table.c.window_start)

# === Watermarks ===

watermarks_table = Table(
    "watermarks",
    metadata,
    Column("source_key", String(256), primary_key=True),
    Column("value", Text, nullable=False),  # Ordered token; ISO-8601 UTC for timestamps
    Column("version", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    # Window that produced the current value (no FK: windows may be purged)
    Column("trigger_id", String(128)),
    Column("window_start", DateTime(timezone=True)),
)

# === Circuit breakers ===

circuit_breakers_table = Table(
    "circuit_breakers",
    metadata,
    Column("service_key", String(128), primary_key=True),
    Column("state", String(32), nullable=False),  # CircuitState
    Column("consecutive_failures", Integer, nullable=False),
    Column("opened_at", DateTime(timezone=True)),
    Column("next_probe_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# === Configuration snapshots ===

config_snapshots_table = Table(
    "config_snapshots",
    metadata,
    Column("version", Integer, primary_key=True, autoincrement=False),
    Column("config_hash", String(64), nullable=False),
    Column("settings_json", Text, nullable=False),
    Column("canonical_version", String(64), nullable=False),
    Column("loaded_at", DateTime(timezone=True), nullable=False),
)

# === Materialization cursors ===

trigger_cursors_table = Table(
    "trigger_cursors",
    metadata,
    Column("trigger_id", String(128), primary_key=True),
    # Start of the last window the scheduler materialized; reruns never move it
    Column("last_window_start", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
