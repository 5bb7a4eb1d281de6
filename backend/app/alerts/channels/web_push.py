"""
web_push.py — Mobile/web push channel via Firebase Cloud Messaging.

Delivery mechanism:
    • firebase_admin.messaging.send with a per-device registration token
    • Payload: notification (title, body) + string-only data map
    • FCM accepting the message counts as SENT; delivery to the device is
      best effort and is never confirmed back

The Firebase app is initialised lazily on the first send from the service
account file, under its own app name so it never collides with a default
app another component may have created.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging

from backend.app.alerts.channels.base import Channel, headline, short_text
from backend.app.alerts.models import (
    Alert,
    DeliveryResult,
    NotificationChannel,
    Recipient,
    User,
)
from backend.app.core.errors import ChannelSendError

logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "tourist-safety-alerts"


class FcmPushClient:
    """Thin async wrapper over the blocking firebase_admin messaging API."""

    def __init__(self, credentials_file: str, *, app_name: str = FIREBASE_APP_NAME) -> None:
        self._credentials_file = credentials_file
        self._app_name = app_name
        self._app: Optional[firebase_admin.App] = None

    def _get_app(self) -> firebase_admin.App:
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(self._app_name)
            except ValueError:
                cred = credentials.Certificate(self._credentials_file)
                self._app = firebase_admin.initialize_app(cred, name=self._app_name)
                logger.info("Firebase app '%s' initialised", self._app_name)
        return self._app

    def _send_sync(self, message: messaging.Message) -> str:
        return messaging.send(message, app=self._get_app())

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: Optional[Dict[str, str]] = None,
    ) -> str:
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            token=token,
            data=data or {},
        )
        try:
            return await asyncio.to_thread(self._send_sync, message)
        except (firebase_exceptions.FirebaseError, ValueError, OSError) as exc:
            raise ChannelSendError("push", str(exc)) from exc


def build_data(alert: Alert) -> Dict[str, str]:
    """FCM data values must all be strings."""
    data: Dict[str, Any] = {
        "alert_id": alert.alert_id,
        "type": alert.alert_type.value,
        "severity": alert.severity.name,
        "latitude": f"{alert.location.latitude:.6f}",
        "longitude": f"{alert.location.longitude:.6f}",
    }
    if alert.zone_id:
        data["zone_id"] = alert.zone_id
    return {k: str(v) for k, v in data.items()}


class PushChannel(Channel):
    channel = NotificationChannel.PUSH

    def __init__(
        self,
        client: Optional[FcmPushClient],
        *,
        maps_base_url: str = "https://maps.google.com/?q=",
    ) -> None:
        self._client = client
        self._maps_base_url = maps_base_url

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return recipient.push_token

    async def send(
        self,
        alert: Alert,
        recipient: Recipient,
        user: Optional[User] = None,
    ) -> DeliveryResult:
        if self._client is None:
            raise ChannelSendError("push", "not configured")

        message_id = await self._client.send(
            recipient.push_token,
            headline(alert, recipient, user),
            short_text(alert, recipient, user, self._maps_base_url),
            build_data(alert),
        )
        logger.info(
            "Push sent for alert %s (message_id=%s)", alert.alert_id, message_id,
            extra={"alert_id": alert.alert_id, "channel": "push"},
        )
        return DeliveryResult(success=True, provider_response={"message_id": message_id})
