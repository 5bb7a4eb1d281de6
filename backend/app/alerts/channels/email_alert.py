"""
email_alert.py — Email alert delivery channel over SMTP.

Delivery mechanism:
    • smtplib with STARTTLS + login, run in a worker thread
    • multipart/alternative: plain text + HTML
    • A clean SMTP conversation counts as SENT

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    To a contact:
        Subject: EMERGENCY: {name} needs help!
        ┌─────────────────────────────────────────┐
        │  EMERGENCY ALERT — {severity}            │
        ├─────────────────────────────────────────┤
        │  {name} may need immediate assistance.   │
        │  Message / Severity / Time / Location    │
        │  Their phone & email                     │
        │  Zone recommendation (zone alerts)       │
        │  [View location on map]                  │
        └─────────────────────────────────────────┘

    To the user:
        Subject: Emergency Alert - Tourist Safety System
        Confirmation that contacts and emergency services were notified.
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from backend.app.alerts.channels.base import (
    Channel,
    alert_time,
    coordinates,
    display_name,
    headline,
    maps_link,
    short_text,
)
from backend.app.alerts.models import (
    Alert,
    AlertSeverity,
    DeliveryResult,
    NotificationChannel,
    Recipient,
    RecipientRole,
    User,
)
from backend.app.core.errors import ChannelSendError

logger = logging.getLogger(__name__)

_SEVERITY_COLOURS = {
    AlertSeverity.CRITICAL: "#b71c1c",
    AlertSeverity.HIGH: "#e65100",
    AlertSeverity.MEDIUM: "#f9a825",
    AlertSeverity.LOW: "#1565c0",
}


class SmtpEmailClient:
    """Blocking smtplib sender wrapped for asyncio via ``asyncio.to_thread``."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_address: Optional[str] = None,
        use_tls: bool = True,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address or username or ""
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds

    def _send_sync(self, message: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)

    async def send(
        self,
        to_address: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.from_address
        message["To"] = to_address
        if text_body:
            message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelSendError("email", str(exc)) from exc


def build_html_body(
    alert: Alert,
    recipient: Recipient,
    user: Optional[User],
    maps_base_url: str = "https://maps.google.com/?q=",
) -> str:
    colour = _SEVERITY_COLOURS.get(alert.severity, "#333")
    link = maps_link(alert, maps_base_url)
    message = html.escape(alert.message)
    recommendation = alert.metadata.get("recommendation")

    if recipient.role == RecipientRole.SELF:
        return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">Emergency Alert Confirmed</h2>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <p>Your emergency alert has been sent successfully.</p>
        <ul>
          <li><strong>Message:</strong> {message}</li>
          <li><strong>Time:</strong> {alert_time(alert)}</li>
          <li><strong>Location:</strong> {coordinates(alert)}</li>
        </ul>
        <p>Your emergency contacts have been notified. Local emergency services have also been alerted.</p>
        <p><strong>Stay safe and follow emergency procedures.</strong></p>
      </div>
    </div>
    """

    name = html.escape(display_name(alert, user))
    phone = html.escape(user.phone) if user and user.phone else "Not available"
    email = html.escape(user.email) if user and user.email else "Not available"
    advice = (
        f"<p><strong>Zone advice:</strong> {html.escape(recommendation)}</p>"
        if recommendation else ""
    )
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">EMERGENCY ALERT — {alert.severity.name}</h2>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <p><strong>{name}</strong> has triggered an emergency alert and may need immediate assistance.</p>
        <h3>Alert Details</h3>
        <ul>
          <li><strong>Message:</strong> {message}</li>
          <li><strong>Severity:</strong> {alert.severity.name}</li>
          <li><strong>Time:</strong> {alert_time(alert)}</li>
          <li><strong>Location:</strong> {coordinates(alert)}</li>
        </ul>
        <h3>Contact Information</h3>
        <ul>
          <li><strong>Phone:</strong> {phone}</li>
          <li><strong>Email:</strong> {email}</li>
        </ul>
        {advice}
        <p><strong>Please contact them immediately or call local emergency services.</strong></p>
        <a href="{link}"
           style="background:{colour};color:white;padding:10px 20px;text-decoration:none;border-radius:4px;">
          View location on map
        </a>
        <p style="color:#888;font-size:12px;margin-top:16px;">Ref: {alert.alert_id}</p>
      </div>
    </div>
    """


class EmailChannel(Channel):
    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        client: Optional[SmtpEmailClient],
        *,
        maps_base_url: str = "https://maps.google.com/?q=",
    ) -> None:
        self._client = client
        self._maps_base_url = maps_base_url

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return recipient.email

    async def send(
        self,
        alert: Alert,
        recipient: Recipient,
        user: Optional[User] = None,
    ) -> DeliveryResult:
        if self._client is None:
            raise ChannelSendError("email", "not configured")

        await self._client.send(
            recipient.email,
            headline(alert, recipient, user),
            build_html_body(alert, recipient, user, self._maps_base_url),
            text_body=short_text(alert, recipient, user, self._maps_base_url),
        )
        logger.info(
            "Email sent to %s for alert %s", recipient.email, alert.alert_id,
            extra={"alert_id": alert.alert_id, "channel": "email"},
        )
        return DeliveryResult(success=True)
