# src/fenestra/notifications/notifiers/console.py
"""Console notifier.

Writes notification events to stdout or stderr as JSON lines or as
human-readable lines. The default notifier for local runs.
"""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, Any, Literal, TextIO, TypeGuard

import structlog

from fenestra.notifications.errors import NotifierError

if TYPE_CHECKING:
    from fenestra.contracts import NotificationEvent

logger = structlog.get_logger(__name__)


def _is_valid_format(v: str) -> TypeGuard[Literal["json", "pretty"]]:
    return v in {"json", "pretty"}


def _is_valid_output(v: str) -> TypeGuard[Literal["stdout", "stderr"]]:
    return v in {"stdout", "stderr"}


class ConsoleNotifier:
    """Print notification events.

    Configuration options:
        format: "json" (default) or "pretty"
        output: "stderr" (default) or "stdout"

    Example configuration:
        notifications:
          notifiers:
            - name: console
              options:
                format: pretty
    """

    _name = "console"

    _VALID_FORMATS: frozenset[str] = frozenset({"json", "pretty"})
    _VALID_OUTPUTS: frozenset[str] = frozenset({"stdout", "stderr"})

    def __init__(self) -> None:
        self._format: Literal["json", "pretty"] = "json"
        self._stream: TextIO = sys.stderr

    @property
    def name(self) -> str:
        return self._name

    def configure(self, options: dict[str, Any]) -> None:
        """Validate and apply options.

        Raises:
            NotifierError: If an option value is invalid
        """
        format_value = options.get("format", "json")
        if not isinstance(format_value, str) or not _is_valid_format(format_value):
            raise NotifierError(
                self._name,
                f"Invalid format {format_value!r}. Must be one of: {', '.join(sorted(self._VALID_FORMATS))}",
            )
        output_value = options.get("output", "stderr")
        if not isinstance(output_value, str) or not _is_valid_output(output_value):
            raise NotifierError(
                self._name,
                f"Invalid output {output_value!r}. Must be one of: {', '.join(sorted(self._VALID_OUTPUTS))}",
            )
        self._format = format_value
        self._stream = sys.stdout if output_value == "stdout" else sys.stderr

    def send(self, event: NotificationEvent) -> None:
        if self._format == "json":
            line = json.dumps(event.to_dict(), sort_keys=True)
        else:
            line = self.format_pretty(event)
        print(line, file=self._stream)

    @staticmethod
    def format_pretty(event: NotificationEvent) -> str:
        """[TIMESTAMP] Kind: key=value, ... (keys sorted)."""
        payload = event.to_dict()
        timestamp = payload.pop("timestamp")
        kind = payload.pop("kind")
        details = ", ".join(f"{key}={payload[key]}" for key in sorted(payload) if payload[key] is not None)
        return f"[{timestamp}] {kind}: {details}"

    def flush(self) -> None:
        self._stream.flush()

    def close(self) -> None:
        """No-op: the console notifier does not own the stream."""
