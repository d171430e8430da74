# src/fenestra/cli.py
"""Fenestra Command Line Interface.

Entry point for the fenestra CLI tool.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from fenestra import __version__
from fenestra.contracts import (
    RerunRejectedError,
    UnknownTriggerError,
    WindowAlignmentError,
    WindowState,
)
from fenestra.core.config import FenestraSettings, load_settings

if TYPE_CHECKING:
    from fenestra.core.ledger import LedgerDB, RunLedger
    from fenestra.plugins.manager import PluginManager

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]

# Module-level singleton for plugin manager
_plugin_manager_cache: PluginManager | None = None


def _get_plugin_manager() -> PluginManager:
    """Get initialized plugin manager (singleton).

    Returns:
        PluginManager with all built-in plugins registered
    """
    global _plugin_manager_cache

    from fenestra.plugins.manager import PluginManager

    if _plugin_manager_cache is None:
        manager = PluginManager()
        manager.register_builtin_plugins()
        _plugin_manager_cache = manager
    return _plugin_manager_cache


app = typer.Typer(
    name="fenestra",
    help="Fenestra: window-based pipeline orchestration.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"fenestra version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # Existence checked in _load_dotenv for a clearer message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Fenestra: window-based pipeline orchestration."""
    from fenestra.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


# === Helpers ===

_SETTINGS_OPTION = typer.Option(
    "settings.yaml",
    "--settings",
    "-s",
    help="Path to settings YAML file.",
)


def _load_settings_or_exit(settings: str) -> FenestraSettings:
    """Load settings, printing configuration errors and exiting on failure."""
    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        # e.problem holds the specific error (e.g. "expected ']'", "found a tab")
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _open_ledger(config: FenestraSettings) -> tuple[LedgerDB, RunLedger]:
    from fenestra.core.ledger import LedgerDB, RunLedger

    try:
        db = LedgerDB.from_url(config.ledger.url)
    except Exception as e:
        typer.echo(f"Error connecting to ledger database: {e}", err=True)
        raise typer.Exit(1) from None
    return db, RunLedger(db)


def _parse_timestamp(value: str, option: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are read as UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        typer.echo(f"Error: {option} must be an ISO-8601 timestamp, got {value!r}", err=True)
        raise typer.Exit(1) from None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)


def _fmt(ts: datetime | None) -> str:
    return ts.isoformat() if ts is not None else "-"


# === Commands ===


@app.command()
def validate(
    settings: str = _SETTINGS_OPTION,
) -> None:
    """Validate configuration and unit-of-work options without running."""
    from fenestra.plugins.config_base import PluginConfigError
    from fenestra.plugins.manager import PluginNotFoundError

    config = _load_settings_or_exit(settings)
    manager = _get_plugin_manager()

    errors: list[str] = []
    for trigger in config.triggers:
        try:
            unit = manager.create_unit(trigger.unit_of_work)
        except (PluginNotFoundError, PluginConfigError) as e:
            errors.append(f"{trigger.id}: {e}")
            continue
        unit.close()

    if errors:
        typer.echo("Unit-of-work errors:", err=True)
        for error in errors:
            typer.echo(f"  - {error}", err=True)
        raise typer.Exit(1)

    typer.echo("Configuration valid.")
    typer.echo(f"  Triggers: {len(config.triggers)} ({sum(1 for t in config.triggers if t.enabled)} enabled)")
    for trigger in config.triggers:
        deps = f", {len(trigger.dependencies)} dependencies" if trigger.dependencies else ""
        typer.echo(f"  - {trigger.id}: every {trigger.window_size} from {_fmt(trigger.start_time)} via {trigger.unit_of_work.plugin}{deps}")


@app.command()
def run(
    settings: str = _SETTINGS_OPTION,
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single scheduling pass, wait for it to finish, and exit.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        help="With --once: seconds to wait for dispatched windows.",
    ),
) -> None:
    """Run the scheduler.

    Without --once, runs until SIGINT/SIGTERM. Send SIGHUP to reload the
    settings file; an invalid file keeps the current configuration.
    """
    from fenestra.engine.orchestrator import Orchestrator
    from fenestra.notifications import create_notification_manager
    from fenestra.notifications.errors import NotifierError
    from fenestra.plugins.config_base import PluginConfigError
    from fenestra.plugins.manager import PluginNotFoundError

    config = _load_settings_or_exit(settings)
    db, ledger = _open_ledger(config)

    try:
        notifications = create_notification_manager(config.notifications)
    except NotifierError as e:
        typer.echo(f"Error configuring notifications: {e}", err=True)
        db.close()
        raise typer.Exit(1) from None

    try:
        try:
            orchestrator = Orchestrator.from_settings(
                config,
                ledger=ledger,
                plugins=_get_plugin_manager(),
                notifications=notifications,
            )
        except (PluginNotFoundError, PluginConfigError) as e:
            typer.echo(f"Error instantiating units of work: {e}", err=True)
            raise typer.Exit(1) from None

        if once:
            orchestrator.recover()
            results = orchestrator.run_once(wait=True, timeout=timeout)
            orchestrator.shutdown(timeout=timeout)
            for trigger_id, result in results.items():
                typer.echo(
                    f"{trigger_id}: created={len(result.created)} dispatched={len(result.dispatched)} "
                    f"waiting={len(result.waiting)} dependency_failed={len(result.dependency_failed)}"
                )
            return

        settings_path = Path(settings).expanduser()
        orchestrator.serve(settings_loader=lambda: load_settings(settings_path))
    finally:
        if notifications is not None:
            notifications.close()
        db.close()


@app.command()
def status(
    settings: str = _SETTINGS_OPTION,
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Show window state counts per trigger and circuit breaker states."""
    config = _load_settings_or_exit(settings)
    db, ledger = _open_ledger(config)
    try:
        counts = ledger.state_counts()
        circuits = ledger.list_circuits()
        snapshot = ledger.latest_config_snapshot()
    finally:
        db.close()

    trigger_ids = sorted({t.id for t in config.triggers} | set(counts))
    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    "config_version": snapshot.version if snapshot is not None else None,
                    "triggers": {tid: {s.value: n for s, n in counts.get(tid, {}).items()} for tid in trigger_ids},
                    "circuits": [
                        {
                            "service_key": c.service_key,
                            "state": c.state.value,
                            "consecutive_failures": c.consecutive_failures,
                            "next_probe_at": _fmt(c.next_probe_at),
                        }
                        for c in circuits
                    ],
                },
                indent=2,
            )
        )
        return

    if snapshot is not None:
        typer.echo(f"Config version {snapshot.version} ({snapshot.config_hash[:12]}), loaded {_fmt(snapshot.loaded_at)}")
    for tid in trigger_ids:
        by_state = counts.get(tid, {})
        summary = ", ".join(f"{state.value}={by_state[state]}" for state in WindowState if state in by_state)
        typer.echo(f"{tid}: {summary or 'no windows'}")
    if circuits:
        typer.echo("Circuits:")
        for c in circuits:
            typer.echo(f"  {c.service_key}: {c.state.value} (failures={c.consecutive_failures}, next probe {_fmt(c.next_probe_at)})")


@app.command()
def history(
    trigger_id: str = typer.Argument(..., help="Trigger id."),
    settings: str = _SETTINGS_OPTION,
    window: str | None = typer.Option(
        None,
        "--window",
        "-w",
        help="Window start (ISO-8601): show attempts and transitions of that window.",
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Most recent windows to list."),
    state: WindowState | None = typer.Option(None, "--state", help="Only windows in this state."),
) -> None:
    """Show recent windows of a trigger, or the full history of one window."""
    config = _load_settings_or_exit(settings)
    db, ledger = _open_ledger(config)
    try:
        if window is None:
            windows = ledger.list_windows(
                trigger_id,
                states=[state] if state is not None else None,
                limit=limit,
                newest_first=True,
            )
            if not windows:
                typer.echo(f"No windows recorded for {trigger_id}.")
                return
            for w in windows:
                error = f"  {w.last_error_class.value}: {w.last_error}" if w.last_error_class is not None else ""
                typer.echo(f"[{_fmt(w.window_start)}, {_fmt(w.window_end)})  {w.state.value:<22} attempt={w.attempt}{error}")
            return

        window_start = _parse_timestamp(window, "--window")
        found = ledger.get_window(trigger_id, window_start)
        if found is None:
            typer.echo(f"Error: No window of {trigger_id} starts at {_fmt(window_start)}", err=True)
            raise typer.Exit(1)
        typer.echo(f"{trigger_id} [{_fmt(found.window_start)}, {_fmt(found.window_end)}): {found.state.value}, attempt {found.attempt}")
        if found.next_attempt_at is not None:
            typer.echo(f"  next attempt at {_fmt(found.next_attempt_at)}")
        typer.echo("Attempts:")
        for a in ledger.get_attempts(trigger_id, window_start):
            outcome = a.outcome.value if a.outcome is not None else "in progress"
            typer.echo(f"  #{a.attempt_number} {_fmt(a.started_at)} {outcome}" + (f" {a.error_json}" if a.error_json else ""))
        typer.echo("Transitions:")
        for e in ledger.get_events(trigger_id, window_start):
            source = e.from_state.value if e.from_state is not None else "-"
            typer.echo(f"  {_fmt(e.recorded_at)} {source} -> {e.to_state.value} ({e.reason.value})" + (f": {e.detail}" if e.detail else ""))
    finally:
        db.close()


@app.command()
def rerun(
    trigger_id: str = typer.Argument(..., help="Trigger id."),
    start: str = typer.Option(..., "--start", help="Window start (ISO-8601)."),
    end: str | None = typer.Option(None, "--end", help="Window end (ISO-8601); defaults to start + window size."),
    settings: str = _SETTINGS_OPTION,
) -> None:
    """Reset one window to PENDING with a fresh retry budget.

    Works for windows in any state except RUNNING. A running scheduler picks
    the window up on its next tick.
    """
    from fenestra.engine.windows import align

    config = _load_settings_or_exit(settings)
    try:
        trigger = config.get_trigger(trigger_id)
    except KeyError:
        typer.echo(f"Error: Unknown trigger: {trigger_id}", err=True)
        raise typer.Exit(1) from None

    window_start = _parse_timestamp(start, "--start")
    window_end = _parse_timestamp(end, "--end") if end is not None else None

    db, ledger = _open_ledger(config)
    try:
        window = ledger.rerun(trigger_id, align(trigger, window_start, window_end))
    except (WindowAlignmentError, RerunRejectedError, UnknownTriggerError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        db.close()
    typer.echo(f"Window [{_fmt(window.window_start)}, {_fmt(window.window_end)}) of {trigger_id} reset to {window.state.value}.")


@app.command()
def watermarks(
    settings: str = _SETTINGS_OPTION,
) -> None:
    """List watermarks per source key."""
    from fenestra.core.watermark import WatermarkStore

    config = _load_settings_or_exit(settings)
    db, _ = _open_ledger(config)
    try:
        records = WatermarkStore(db).list_all()
    finally:
        db.close()

    if not records:
        typer.echo("No watermarks recorded.")
        return
    for r in records:
        source = f" (by {r.trigger_id} window {_fmt(r.window_start)})" if r.trigger_id else ""
        typer.echo(f"{r.source_key}: {r.value} v{r.version} updated {_fmt(r.updated_at)}{source}")


@app.command()
def purge(
    settings: str = _SETTINGS_OPTION,
    retention_days: int | None = typer.Option(
        None,
        "--retention-days",
        "-r",
        help="Delete terminal windows completed more than this many days ago (default: from config).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what would be deleted without deleting.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt.",
    ),
) -> None:
    """Purge old terminal windows from the ledger.

    Deletes SUCCEEDED and FAILED_EXHAUSTED windows (with their attempts and
    transitions) older than the retention period. Pending and running
    windows are never touched.

    Examples:

        # See what would be deleted
        fenestra purge --dry-run

        # Delete windows completed more than 30 days ago
        fenestra purge --retention-days 30 --yes
    """
    from fenestra.core.retention import PurgeManager

    config = _load_settings_or_exit(settings)
    effective_retention_days = retention_days if retention_days is not None else config.ledger.retention_days
    if effective_retention_days <= 0:
        typer.echo("Error: --retention-days must be positive.", err=True)
        raise typer.Exit(1)

    db, _ = _open_ledger(config)
    try:
        purge_manager = PurgeManager(db)
        expired = purge_manager.find_expired_windows(effective_retention_days)

        if not expired:
            typer.echo(f"No windows older than {effective_retention_days} days found.")
            return

        if dry_run:
            typer.echo(f"Would delete {len(expired)} window(s) older than {effective_retention_days} days:")
            for trigger_id, window_start in expired[:10]:  # Show first 10
                typer.echo(f"  {trigger_id} {_fmt(window_start)}")
            if len(expired) > 10:
                typer.echo(f"  ... and {len(expired) - 10} more")
            return

        if not yes:
            confirm = typer.confirm(f"Delete {len(expired)} window(s) older than {effective_retention_days} days?")
            if not confirm:
                typer.echo("Aborted.")
                raise typer.Exit(1)

        result = purge_manager.purge_windows(expired)
        typer.echo(f"Purge completed in {result.duration_seconds:.2f}s:")
        typer.echo(f"  Windows: {result.deleted_windows}")
        typer.echo(f"  Attempts: {result.deleted_attempts}")
        typer.echo(f"  Transitions: {result.deleted_events}")
    finally:
        db.close()


if __name__ == "__main__":
    app()
