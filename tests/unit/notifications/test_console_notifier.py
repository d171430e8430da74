# tests/unit/notifications/test_console_notifier.py
"""Tests for ConsoleNotifier."""

import json
from datetime import UTC, datetime

import pytest

from fenestra.contracts import CircuitOpened, WindowExhausted
from fenestra.notifications import ConsoleNotifier, NotifierError, NotifierProtocol

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

EVENT = WindowExhausted(
    timestamp=NOW,
    trigger_id="orders",
    window_start=datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
    window_end=NOW,
    attempts=3,
    error_class="transient",
    last_error="upstream timed out",
)


def configured(**options: str) -> ConsoleNotifier:
    notifier = ConsoleNotifier()
    notifier.configure(options)
    return notifier


class TestConfiguration:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(ConsoleNotifier(), NotifierProtocol)
        assert ConsoleNotifier().name == "console"

    @pytest.mark.parametrize(("option", "value"), [("format", "xml"), ("output", "file"), ("format", 1)])
    def test_invalid_options(self, option: str, value: object) -> None:
        with pytest.raises(NotifierError, match=f"Invalid {option}"):
            ConsoleNotifier().configure({option: value})


class TestSend:
    def test_json_to_stderr_by_default(self, capsys: pytest.CaptureFixture[str]) -> None:
        configured().send(EVENT)

        captured = capsys.readouterr()
        assert captured.out == ""
        payload = json.loads(captured.err)
        assert payload == {
            "kind": "WindowExhausted",
            "timestamp": "2026-03-02T10:00:00+00:00",
            "trigger_id": "orders",
            "window_start": "2026-03-02T09:00:00+00:00",
            "window_end": "2026-03-02T10:00:00+00:00",
            "attempts": 3,
            "error_class": "transient",
            "last_error": "upstream timed out",
        }

    def test_pretty_to_stdout(self, capsys: pytest.CaptureFixture[str]) -> None:
        configured(format="pretty", output="stdout").send(EVENT)

        line = capsys.readouterr().out.strip()
        assert line == (
            "[2026-03-02T10:00:00+00:00] WindowExhausted: attempts=3, error_class=transient, "
            "last_error=upstream timed out, trigger_id=orders, "
            "window_end=2026-03-02T10:00:00+00:00, window_start=2026-03-02T09:00:00+00:00"
        )

    def test_pretty_circuit_event(self) -> None:
        event = CircuitOpened(timestamp=NOW, service_key="warehouse", consecutive_failures=5, next_probe_at=NOW, reopened=True)

        line = ConsoleNotifier.format_pretty(event)

        assert line.startswith("[2026-03-02T10:00:00+00:00] CircuitOpened: consecutive_failures=5")
        assert "reopened=True" in line
        assert "service_key=warehouse" in line

    def test_one_line_per_event(self, capsys: pytest.CaptureFixture[str]) -> None:
        notifier = configured(output="stdout")

        notifier.send(EVENT)
        notifier.send(EVENT)
        notifier.flush()
        notifier.close()

        assert len(capsys.readouterr().out.splitlines()) == 2
