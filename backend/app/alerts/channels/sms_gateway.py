"""
sms_gateway.py — SMS delivery channel via the Twilio REST API.

Delivery mechanism:
    • HTTP POST (form-encoded) to the Twilio Messages resource
    • Basic auth with Account SID + Auth Token
    • A 2xx response means the message was accepted by the carrier queue

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    Dispatcher  →  SmsChannel  →  TwilioSmsClient  →  Twilio  →  Carrier

    POST {TWILIO_API_BASE}/Accounts/{SID}/Messages.json
         To=+91...  From=+1...  Body=...

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    To the user:
        "EMERGENCY ALERT: {message}. Your location has been shared with
         your emergency contacts. Stay safe!"

    To a contact:
        "EMERGENCY: {name} needs help! Alert: {message}. Location: {lat}, {lon}
         {map link} Time: {time}. Ref:{alert_id}"

    Bodies are capped at three concatenated segments.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.alerts.channels.base import Channel, short_text
from backend.app.alerts.models import (
    Alert,
    DeliveryResult,
    NotificationChannel,
    Recipient,
    User,
)
from backend.app.core.errors import ChannelSendError

logger = logging.getLogger(__name__)

# Three GSM-7 segments of a concatenated SMS
SMS_MAX_LENGTH = 459


def format_sms(text: str, max_length: int = SMS_MAX_LENGTH) -> str:
    """Trim ``text`` to ``max_length`` characters, marking the cut."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


class TwilioSmsClient:
    """
    Minimal async client for the Twilio Messages API.

    ``send`` returns the decoded Twilio response on success and raises
    ``ChannelSendError`` otherwise.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._account_sid = account_sid
        self._from_number = from_number
        self._url = f"{api_base.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        self._http = http_client or httpx.AsyncClient(
            auth=(account_sid, auth_token),
            timeout=timeout_seconds,
        )

    async def send(self, to_phone: str, body: str) -> Dict[str, Any]:
        try:
            resp = await self._http.post(
                self._url,
                data={"To": to_phone, "From": self._from_number, "Body": body},
            )
        except httpx.HTTPError as exc:
            raise ChannelSendError("sms", f"transport error: {exc}") from exc

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message", resp.text)
            except ValueError:
                detail = resp.text
            raise ChannelSendError(
                "sms", f"Twilio {resp.status_code}: {detail}", status_code=resp.status_code
            )
        return resp.json()

    async def close(self) -> None:
        await self._http.aclose()


class SmsChannel(Channel):
    channel = NotificationChannel.SMS

    def __init__(
        self,
        client: Optional[TwilioSmsClient],
        *,
        maps_base_url: str = "https://maps.google.com/?q=",
    ) -> None:
        self._client = client
        self._maps_base_url = maps_base_url

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return recipient.phone

    async def send(
        self,
        alert: Alert,
        recipient: Recipient,
        user: Optional[User] = None,
    ) -> DeliveryResult:
        if self._client is None:
            raise ChannelSendError("sms", "not configured")

        body = format_sms(short_text(alert, recipient, user, self._maps_base_url))
        response = await self._client.send(recipient.phone, body)
        logger.info(
            "SMS sent to %s for alert %s (sid=%s)",
            recipient.phone, alert.alert_id, response.get("sid"),
            extra={"alert_id": alert.alert_id, "channel": "sms"},
        )
        return DeliveryResult(
            success=True,
            provider_response={"sid": response.get("sid"), "status": response.get("status")},
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
