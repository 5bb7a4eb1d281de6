"""
dispatcher.py — Concurrent multi-channel fan-out for one alert.

This is the coordinator that:
    1. Moves the alert to NOTIFYING (compare-and-set; a second concurrent
       dispatch of the same alert is rejected here)
    2. Plans every (channel, recipient) pair the alert needs
    3. Drops pairs that were already SENT by an earlier dispatch
    4. Attempts the rest concurrently, each bounded by a timeout
    5. Persists one audit row per pair, whatever the outcome
    6. Settles the alert on NOTIFIED or NOTIFICATION_FAILED (retried while
       storage is unavailable)

═══════════════════════════════════════════════════════════════════════════
FAN-OUT PLAN
═══════════════════════════════════════════════════════════════════════════

    Recipient field      Channel
    ───────────────      ───────
    phone                SMS
    email                EMAIL
    push_token           PUSH
    (per alert)          WEBHOOK   HIGH / CRITICAL only, one per alert

    Who is notified:
        LOW / MEDIUM      the user only
        HIGH / CRITICAL   the user, every emergency contact, emergency services

    A pair only exists when the recipient has the field. A pair whose channel
    has no credentials is recorded as SKIPPED_NOT_CONFIGURED without a send.

═══════════════════════════════════════════════════════════════════════════
OUTCOME
═══════════════════════════════════════════════════════════════════════════

    Attempts are independent: every one is awaited (asyncio.gather) and a
    failure in one never cancels another. Afterwards:

        any attempt of the alert SENT (now or earlier)  → NOTIFIED
        otherwise (including nothing to attempt)        → NOTIFICATION_FAILED

    Retrying a NOTIFICATION_FAILED alert re-attempts FAILED and SKIPPED pairs
    only; a SENT pair is never sent twice and never gets a second row.

═══════════════════════════════════════════════════════════════════════════
STALLED DISPATCHES
═══════════════════════════════════════════════════════════════════════════

    If the final step cannot be written the alert stays NOTIFYING. Nothing
    else may move it from there, and as an open alert it absorbs new events
    for the same (user, type). settle_stalled() finds NOTIFYING alerts whose
    last update is older than a cutoff and settles each one from its
    recorded attempts, using the same rule as above.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from backend.app.alerts.alert_store import AlertStore
from backend.app.alerts.channels.base import Channel
from backend.app.alerts.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AttemptOutcome,
    DispatchReport,
    NotificationAttempt,
    NotificationChannel,
    Recipient,
    RecipientRole,
    User,
)
from backend.app.core.errors import (
    ChannelSendError,
    InvalidTransitionError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

# Channels addressed through a field of the recipient, in send order
PERSON_CHANNELS = (
    NotificationChannel.SMS,
    NotificationChannel.EMAIL,
    NotificationChannel.PUSH,
)

# Recipient key of the webhook row when no endpoint is configured
EMERGENCY_SERVICES_KEY = "emergency-services"

EMERGENCY_SERVICES = Recipient(
    name="Emergency services",
    role=RecipientRole.EMERGENCY_SERVICES,
)

# NOTIFYING alerts examined per settle_stalled() call
STALLED_BATCH_SIZE = 100


@dataclass(frozen=True)
class PlannedSend:
    """One (channel, recipient) pair of the fan-out."""
    channel: NotificationChannel
    address: str
    recipient: Recipient

    @property
    def key(self) -> Tuple[NotificationChannel, str]:
        return (self.channel, self.address)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _final_status(delivered: bool) -> AlertStatus:
    return AlertStatus.NOTIFIED if delivered else AlertStatus.NOTIFICATION_FAILED


def recipients_for(alert: Alert, user: User) -> List[Recipient]:
    """
    Build the person recipients for ``alert``.

    The user always gets a confirmation; emergency contacts are added for
    HIGH and CRITICAL alerts. Emergency services are not a person recipient:
    the dispatcher adds the webhook pair itself.
    """
    recipients = [
        Recipient(
            name=user.name or user.user_id,
            role=RecipientRole.SELF,
            phone=user.phone,
            email=user.email,
            push_token=user.push_token,
        )
    ]
    if alert.severity >= AlertSeverity.HIGH:
        for contact in user.emergency_contacts:
            recipients.append(
                Recipient(
                    name=contact.name,
                    role=RecipientRole.CONTACT,
                    phone=contact.phone,
                    email=contact.email,
                    relationship=contact.relationship,
                )
            )
    return recipients


class NotificationDispatcher:
    """
    Parameters
    ----------
    store : AlertStore
        Status transitions and the attempt audit trail.
    channels : iterable of Channel
        One sender per NotificationChannel. A channel with no registered
        sender is treated as not configured.
    timeout_seconds : float
        Upper bound for a single send.
    max_concurrency : int
        Sends in flight at once for one dispatch.
    settle_attempts : int
        Tries of the final status write before the dispatch gives up on it.
    settle_backoff_seconds : float
        Pause before the second try; doubled after each failure.
    """

    def __init__(
        self,
        store: AlertStore,
        channels: Iterable[Channel],
        *,
        timeout_seconds: float = 10.0,
        max_concurrency: int = 16,
        settle_attempts: int = 3,
        settle_backoff_seconds: float = 0.5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._channels: Dict[NotificationChannel, Channel] = {c.channel: c for c in channels}
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max(1, max_concurrency)
        self.settle_attempts = max(1, settle_attempts)
        self.settle_backoff_seconds = settle_backoff_seconds
        self._clock = clock

    @property
    def channels(self) -> Dict[NotificationChannel, Channel]:
        return dict(self._channels)

    def configured_channels(self) -> Dict[str, bool]:
        return {
            ch.value: bool(self._channels.get(ch) and self._channels[ch].is_configured)
            for ch in NotificationChannel
        }

    # ─── Planning ────────────────────────────────────────────────────────

    def plan(self, alert: Alert, recipients: Iterable[Recipient]) -> List[PlannedSend]:
        """Every (channel, recipient) pair for ``alert``, de-duplicated by address."""
        planned: List[PlannedSend] = []
        seen: Set[Tuple[NotificationChannel, str]] = set()

        def _add(item: PlannedSend) -> None:
            if item.key not in seen:
                seen.add(item.key)
                planned.append(item)

        for recipient in recipients:
            for channel in PERSON_CHANNELS:
                address = self._address(channel, recipient)
                if address:
                    _add(PlannedSend(channel, address, recipient))

        if alert.severity >= AlertSeverity.HIGH:
            webhook = self._channels.get(NotificationChannel.WEBHOOK)
            address = webhook.address_for(EMERGENCY_SERVICES) if webhook else None
            _add(PlannedSend(
                NotificationChannel.WEBHOOK,
                address or EMERGENCY_SERVICES_KEY,
                EMERGENCY_SERVICES,
            ))

        return planned

    def _address(self, channel: NotificationChannel, recipient: Recipient) -> Optional[str]:
        sender = self._channels.get(channel)
        if sender is not None:
            return sender.address_for(recipient)
        # Unregistered channel: still planned (and skipped) when the field exists
        return {
            NotificationChannel.SMS: recipient.phone,
            NotificationChannel.EMAIL: recipient.email,
            NotificationChannel.PUSH: recipient.push_token,
        }.get(channel)

    # ─── Dispatch ────────────────────────────────────────────────────────

    async def dispatch(
        self,
        alert: Alert,
        recipients: Iterable[Recipient],
        *,
        user: Optional[User] = None,
    ) -> DispatchReport:
        """
        Notify every recipient of ``alert`` on every applicable channel.

        Raises
        ------
        InvalidTransitionError
            The alert is not in CREATED or NOTIFICATION_FAILED (for example
            another dispatch of it is already running).
        StorageUnavailableError
            The alert could not be moved to NOTIFYING, or could not be
            settled afterwards. In the second case it stays NOTIFYING until
            ``settle_stalled`` picks it up.
        """
        started = self._clock()
        alert = await self._store.transition(alert.alert_id, AlertStatus.NOTIFYING)

        previous = await self._store.list_attempts(alert.alert_id)
        sent_before = {
            (a.channel, a.recipient) for a in previous
            if a.outcome == AttemptOutcome.SENT
        }

        plan = self.plan(alert, recipients)
        pending = [p for p in plan if p.key not in sent_before]
        report = DispatchReport(
            alert_id=alert.alert_id,
            final_status=AlertStatus.NOTIFYING,
            already_sent=len(plan) - len(pending),
            started_at=started,
        )

        semaphore = asyncio.Semaphore(self.max_concurrency)
        t0 = time.perf_counter()
        outcomes = await asyncio.gather(
            *(self._attempt(alert, item, user, semaphore) for item in pending)
        )

        for attempt, persisted in outcomes:
            report.attempts.append(attempt)
            if not persisted:
                report.persist_errors += 1

        delivered = bool(sent_before) or report.sent > 0
        final_status = _final_status(delivered)
        await self._settle(alert.alert_id, final_status)

        report.final_status = final_status
        report.completed_at = self._clock()
        log = logger.info if delivered else logger.warning
        log(
            "Alert %s dispatched in %.0fms: %d sent, %d failed, %d skipped, "
            "%d already sent → %s",
            alert.alert_id, (time.perf_counter() - t0) * 1000,
            report.sent, report.failed, report.skipped, report.already_sent,
            final_status.value,
            extra={"alert_id": alert.alert_id, "outcome": final_status.value},
        )
        return report

    async def _settle(self, alert_id: str, final_status: AlertStatus) -> Alert:
        """Final status write, retried while storage is unavailable."""
        delay = self.settle_backoff_seconds
        for attempt in range(1, self.settle_attempts + 1):
            try:
                return await self._store.transition(alert_id, final_status)
            except InvalidTransitionError:
                if attempt == 1:
                    raise
                # A previous try may have been applied with its response lost
                current = await self._store.get(alert_id)
                if current.status != final_status:
                    raise
                return current
            except StorageUnavailableError as exc:
                if attempt == self.settle_attempts:
                    raise
                logger.warning(
                    "Settling alert %s as %s failed (try %d of %d): %s",
                    alert_id, final_status.value, attempt, self.settle_attempts, exc.message,
                    extra={"alert_id": alert_id},
                )
                await asyncio.sleep(delay)
                delay *= 2

    async def settle_stalled(self, older_than: timedelta) -> List[Alert]:
        """
        Settle NOTIFYING alerts last updated more than ``older_than`` ago.

        Each alert becomes NOTIFIED if any of its recorded attempts was SENT,
        NOTIFICATION_FAILED otherwise. Alerts that cannot be settled now are
        logged and left for the next call.

        Raises
        ------
        StorageUnavailableError
            The NOTIFYING alerts could not be listed.
        """
        cutoff = self._clock() - older_than
        notifying = await self._store.list_alerts(
            status=AlertStatus.NOTIFYING, limit=STALLED_BATCH_SIZE
        )
        settled: List[Alert] = []
        for alert in notifying:
            if alert.updated_at >= cutoff:
                continue
            try:
                attempts = await self._store.list_attempts(alert.alert_id)
                delivered = any(a.outcome == AttemptOutcome.SENT for a in attempts)
                final_status = _final_status(delivered)
                settled.append(await self._store.transition(alert.alert_id, final_status))
            except InvalidTransitionError:
                continue
            except StorageUnavailableError as exc:
                logger.error(
                    "Could not settle stalled alert %s: %s", alert.alert_id, exc.message,
                    extra={"alert_id": alert.alert_id},
                )
                continue
            logger.warning(
                "Stalled dispatch of alert %s settled as %s from %d recorded attempts",
                alert.alert_id, final_status.value, len(attempts),
                extra={"alert_id": alert.alert_id, "outcome": final_status.value},
            )
        return settled

    async def _attempt(
        self,
        alert: Alert,
        item: PlannedSend,
        user: Optional[User],
        semaphore: asyncio.Semaphore,
    ) -> Tuple[NotificationAttempt, bool]:
        """Run one send and persist its row. Never raises."""
        sender = self._channels.get(item.channel)
        error: Optional[str] = None

        if sender is None or not sender.is_configured:
            outcome = AttemptOutcome.SKIPPED_NOT_CONFIGURED
            error = f"{item.channel.value} channel not configured"
        else:
            async with semaphore:
                try:
                    await asyncio.wait_for(
                        sender.send(alert, item.recipient, user),
                        timeout=self.timeout_seconds,
                    )
                    outcome = AttemptOutcome.SENT
                except asyncio.TimeoutError:
                    outcome = AttemptOutcome.FAILED
                    error = f"timeout after {self.timeout_seconds:g}s"
                except ChannelSendError as exc:
                    outcome = AttemptOutcome.FAILED
                    error = str(exc)
                except Exception as exc:
                    logger.exception(
                        "Unexpected %s error for alert %s", item.channel.value, alert.alert_id,
                        extra={"alert_id": alert.alert_id, "channel": item.channel.value},
                    )
                    outcome = AttemptOutcome.FAILED
                    error = f"{type(exc).__name__}: {exc}"

        attempt = NotificationAttempt(
            alert_id=alert.alert_id,
            channel=item.channel,
            recipient=item.address,
            outcome=outcome,
            attempted_at=self._clock(),
            error=error,
            recipient_role=item.recipient.role,
        )
        if outcome == AttemptOutcome.FAILED:
            logger.warning(
                "%s to %s failed for alert %s: %s",
                item.channel.value, item.address, alert.alert_id, error,
                extra={
                    "alert_id": alert.alert_id,
                    "channel": item.channel.value,
                    "outcome": outcome.value,
                },
            )

        try:
            stored = await self._store.record_attempt(attempt)
        except StorageUnavailableError as exc:
            logger.error(
                "Could not persist %s attempt for alert %s: %s",
                item.channel.value, alert.alert_id, exc,
                extra={"alert_id": alert.alert_id, "channel": item.channel.value},
            )
            return attempt, False
        return stored, True
