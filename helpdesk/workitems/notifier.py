from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

import httpx

from .models import NotificationEventType, Recipient

logger = logging.getLogger(__name__)


class NotifierError(RuntimeError):
    """Raised when a notification could not be delivered."""


class Notifier(Protocol):
    """Outbound notification transport; best effort, may raise on failure."""

    async def send(
        self, event_type: NotificationEventType, recipient: Recipient, payload: Mapping[str, Any]
    ) -> None:
        ...


class LoggingNotifier:
    """Notifier used when no transport is configured; writes deliveries to the log."""

    async def send(
        self, event_type: NotificationEventType, recipient: Recipient, payload: Mapping[str, Any]
    ) -> None:
        logger.info(
            "Notification %s for %s: %s",
            event_type.value,
            recipient,
            payload.get("message", ""),
        )


class WebhookNotifier:
    """Deliver notifications as JSON POSTs to an email/relay webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(
        self, event_type: NotificationEventType, recipient: Recipient, payload: Mapping[str, Any]
    ) -> None:
        body = {
            "event_type": event_type.value,
            "recipient": {"user_id": recipient.user_id, "email": recipient.email},
            "payload": dict(payload),
        }
        try:
            response = await self._client.post(self._url, json=body)
        except httpx.HTTPError as exc:
            raise NotifierError(f"Webhook request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotifierError(f"Webhook responded with {response.status_code}")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
