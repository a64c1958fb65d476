"""Webhook notifier: POSTs session events as JSON.

Delivery is best-effort. The orchestrator bounds each ``notify()`` call
with a timeout and turns failures into a warning line on the session
log; a notification failure never changes a session's status.

The payload is the orchestrator's generic event mapping. Chat or email
formatting belongs to whatever receives the webhook.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from launchpad import __version__

logger = logging.getLogger(__name__)


class WebhookDeliveryError(Exception):
    """Webhook endpoint rejected or could not receive an event."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Webhook delivery failed ({status_code}): {message}")


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


async def _close_shared_async_client() -> None:
    global _shared_async_client
    client, _shared_async_client = _shared_async_client, None
    if client is not None:
        await client.aclose()


# ── Notifier ─────────────────────────────────────────────────────


class WebhookNotifier:
    """Notifier that delivers each event with one HTTP POST."""

    def __init__(
        self,
        *,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
        events: frozenset[str] | None = None,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        self._url = url
        self._owns_client = http_client is None
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._events = events

    async def notify(self, event: Mapping[str, Any]) -> None:
        name = event.get("event", "")
        if self._events is not None and name not in self._events:
            return
        try:
            resp = await self._client.post(
                self._url,
                json=dict(event),
                headers={
                    "User-Agent": f"launchpad/{__version__}",
                    "X-Launchpad-Event": str(name),
                },
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise WebhookDeliveryError(0, "request timed out") from exc
        except httpx.TransportError as exc:
            raise WebhookDeliveryError(0, str(exc) or type(exc).__name__) from exc

        if resp.status_code >= 400:
            body = resp.text
            raise WebhookDeliveryError(resp.status_code, body[:200] if body else "")
        logger.debug(
            "Webhook delivered",
            extra={"event_name": name, "session_id": event.get("session_id")},
        )

    async def aclose(self) -> None:
        """Close the shared client; a caller-supplied client is left open."""
        if self._owns_client:
            await _close_shared_async_client()
