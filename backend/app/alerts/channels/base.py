"""
base.py — Shared channel contract and message wording.

Each channel wraps one transport client and exposes:

    channel          NotificationChannel this sender covers
    is_configured    False when credentials are missing (no send attempted)
    address_for(r)   the recipient's address on this channel, or None
    send(alert, r)   deliver one message; raise ChannelSendError on failure

Wording follows two registers:
    • SELF       — confirmation that help has been requested
    • CONTACT    — "<name> needs help!" with location and a map link
"""

from __future__ import annotations

from datetime import timezone
from typing import Optional

from backend.app.alerts.models import (
    Alert,
    DeliveryResult,
    NotificationChannel,
    Recipient,
    RecipientRole,
    User,
)


class Channel:
    """Base class for channel senders."""

    channel: NotificationChannel

    @property
    def is_configured(self) -> bool:
        raise NotImplementedError

    def address_for(self, recipient: Recipient) -> Optional[str]:
        raise NotImplementedError

    async def send(
        self,
        alert: Alert,
        recipient: Recipient,
        user: Optional[User] = None,
    ) -> DeliveryResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Message building blocks
# ═══════════════════════════════════════════════════════════════════════════

def display_name(alert: Alert, user: Optional[User]) -> str:
    if user and user.name:
        return user.name
    return f"User {alert.user_id}"


def maps_link(alert: Alert, base_url: str = "https://maps.google.com/?q=") -> str:
    return f"{base_url}{alert.location.latitude:.6f},{alert.location.longitude:.6f}"


def coordinates(alert: Alert) -> str:
    return f"{alert.location.latitude:.5f}, {alert.location.longitude:.5f}"


def alert_time(alert: Alert) -> str:
    return alert.created_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def headline(alert: Alert, recipient: Recipient, user: Optional[User]) -> str:
    """Subject / title line for the recipient's register."""
    if recipient.role == RecipientRole.SELF:
        return "Emergency Alert - Tourist Safety System"
    return f"EMERGENCY: {display_name(alert, user)} needs help!"


def short_text(
    alert: Alert,
    recipient: Recipient,
    user: Optional[User],
    maps_base_url: str = "https://maps.google.com/?q=",
) -> str:
    """Plain-text body used by SMS and push."""
    if recipient.role == RecipientRole.SELF:
        return (
            f"EMERGENCY ALERT: {alert.message}. Your location has been shared "
            f"with your emergency contacts. Stay safe!"
        )
    return (
        f"EMERGENCY: {display_name(alert, user)} needs help! "
        f"Alert: {alert.message}. Location: {coordinates(alert)} "
        f"{maps_link(alert, maps_base_url)} Time: {alert_time(alert)}. "
        f"Ref:{alert.alert_id}"
    )
