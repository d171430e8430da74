# src/fenestra/notifications/notifiers/webhook.py
"""Webhook notifier.

POSTs each event as JSON to a configured URL (chat incoming webhooks,
incident tools, a small relay service). Uses a shared httpx.Client for
connection reuse.

Example configuration:
    notifications:
      notifiers:
        - name: webhook
          options:
            url: ${FENESTRA_WEBHOOK_URL}
            timeout: 10
            headers:
              Authorization: Bearer ${FENESTRA_WEBHOOK_TOKEN}
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from fenestra.notifications.errors import NotifierError

if TYPE_CHECKING:
    from fenestra.contracts import NotificationEvent

logger = structlog.get_logger(__name__)


class WebhookNotifier:
    """POST notification events to an HTTP endpoint.

    Configuration options:
        url: Endpoint (required, http or https)
        timeout: Request timeout in seconds (default 10)
        headers: Extra request headers
        kinds: Only send these event kinds (default: all)
    """

    _name = "webhook"

    def __init__(self) -> None:
        self._url: str | None = None
        self._kinds: frozenset[str] | None = None
        self._client: httpx.Client | None = None

    @property
    def name(self) -> str:
        return self._name

    def configure(self, options: dict[str, Any]) -> None:
        """Validate options and open the HTTP client.

        Raises:
            NotifierError: If url is missing or malformed, or another option is invalid
        """
        url = options.get("url")
        if not isinstance(url, str) or not url:
            raise NotifierError(self._name, "'url' is required")
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise NotifierError(self._name, f"Invalid url {url!r}: {e}") from e
        if parsed.scheme not in ("http", "https"):
            raise NotifierError(self._name, f"url must be http or https, got {parsed.scheme!r}")

        timeout = options.get("timeout", 10.0)
        if not isinstance(timeout, int | float) or isinstance(timeout, bool) or timeout <= 0:
            raise NotifierError(self._name, f"'timeout' must be a positive number, got {timeout!r}")

        headers = options.get("headers", {})
        if not isinstance(headers, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
            raise NotifierError(self._name, "'headers' must be a mapping of strings")

        kinds = options.get("kinds")
        if kinds is not None:
            if not isinstance(kinds, list) or not all(isinstance(k, str) for k in kinds):
                raise NotifierError(self._name, "'kinds' must be a list of event kind names")
            self._kinds = frozenset(kinds)

        self._url = url
        self._client = httpx.Client(timeout=float(timeout), headers={"User-Agent": "fenestra", **headers})
        logger.debug("webhook_notifier_configured", host=parsed.host, kinds=sorted(self._kinds) if self._kinds else None)

    def send(self, event: NotificationEvent) -> None:
        """POST the event.

        Raises:
            RuntimeError: If the notifier was never configured
            httpx.HTTPError: On transport errors or non-2xx responses
        """
        if self._client is None or self._url is None:
            raise RuntimeError("WebhookNotifier.send() called before configure()")
        if self._kinds is not None and event.kind not in self._kinds:
            return
        response = self._client.post(self._url, json=event.to_dict())
        response.raise_for_status()

    def flush(self) -> None:
        """Nothing is buffered; each send() is synchronous."""

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
