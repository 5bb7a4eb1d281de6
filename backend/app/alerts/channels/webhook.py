"""
webhook.py — Emergency-services notification via an HTTP webhook.

Delivery mechanism:
    • One JSON POST per HIGH/CRITICAL alert to a fixed endpoint
    • Optional bearer token
    • Any 2xx response counts as SENT

═══════════════════════════════════════════════════════════════════════════
PAYLOAD
═══════════════════════════════════════════════════════════════════════════

    POST {EMERGENCY_WEBHOOK_URL}
    {
        "alert_id": "ALR-3A7B...",
        "type": "zone_entry",
        "severity": "HIGH",
        "message": "Entered danger zone: ...",
        "user": {"id": "...", "name": "...", "phone": "...", "email": "..."},
        "location": {"latitude": 28.6129, "longitude": 77.2295, "accuracy_m": 12.0},
        "zone_id": "...",
        "map_url": "https://maps.google.com/?q=...",
        "created_at": "2026-03-01T10:00:00+00:00"
    }
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.alerts.channels.base import Channel, maps_link
from backend.app.alerts.models import (
    Alert,
    DeliveryResult,
    NotificationChannel,
    Recipient,
    User,
)
from backend.app.core.errors import ChannelSendError

logger = logging.getLogger(__name__)


class WebhookClient:
    def __init__(
        self,
        *,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=timeout_seconds)
        http_client.headers.update(headers)
        self._http = http_client

    async def post(self, url: str, json_payload: Dict[str, Any]) -> int:
        try:
            resp = await self._http.post(url, json=json_payload)
        except httpx.HTTPError as exc:
            raise ChannelSendError("webhook", f"transport error: {exc}") from exc
        if not resp.is_success:
            raise ChannelSendError(
                "webhook", f"HTTP {resp.status_code}", status_code=resp.status_code
            )
        return resp.status_code

    async def close(self) -> None:
        await self._http.aclose()


def build_payload(
    alert: Alert,
    user: Optional[User],
    maps_base_url: str = "https://maps.google.com/?q=",
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "alert_id": alert.alert_id,
        "type": alert.alert_type.value,
        "severity": alert.severity.name,
        "message": alert.message,
        "user": {
            "id": alert.user_id,
            "name": user.name if user else None,
            "phone": user.phone if user else None,
            "email": user.email if user else None,
        },
        "location": {
            "latitude": alert.location.latitude,
            "longitude": alert.location.longitude,
            "accuracy_m": alert.location.accuracy_m,
        },
        "zone_id": alert.zone_id,
        "map_url": maps_link(alert, maps_base_url),
        "created_at": alert.created_at.isoformat(),
    }
    return payload


class WebhookChannel(Channel):
    """
    Emergency-services channel. Its address is the configured endpoint, not
    a field of the recipient.
    """

    channel = NotificationChannel.WEBHOOK

    def __init__(
        self,
        client: Optional[WebhookClient],
        url: Optional[str],
        *,
        maps_base_url: str = "https://maps.google.com/?q=",
    ) -> None:
        self._client = client
        self._url = url
        self._maps_base_url = maps_base_url

    @property
    def is_configured(self) -> bool:
        return self._client is not None and bool(self._url)

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return self._url

    async def send(
        self,
        alert: Alert,
        recipient: Recipient,
        user: Optional[User] = None,
    ) -> DeliveryResult:
        if not self.is_configured:
            raise ChannelSendError("webhook", "not configured")

        status = await self._client.post(self._url, build_payload(alert, user, self._maps_base_url))
        logger.info(
            "Emergency services notified for alert %s (HTTP %d)", alert.alert_id, status,
            extra={"alert_id": alert.alert_id, "channel": "webhook"},
        )
        return DeliveryResult(success=True, provider_response={"status_code": status})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
