"""
alert_store.py - Alert lifecycle on top of the storage router.

Responsibilities:
    • Create alerts exactly once per (user, alert type) while one is open
    • Enforce the status machine with compare-and-set writes
    • Stamp acknowledgement / resolution (the only way into those states)
    • Persist and list notification attempts

Every write is a conditional storage operation, so concurrent sweeps,
pings, dispatches and orchestrator replicas cannot create a second open
alert or apply a transition from a stale status.

═══════════════════════════════════════════════════════════════════════════
TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    transition()   CREATED → NOTIFYING → NOTIFIED | NOTIFICATION_FAILED
                   NOTIFICATION_FAILED → NOTIFYING              (retry)
    acknowledge()  NOTIFIED | NOTIFICATION_FAILED → ACKNOWLEDGED
    resolve()      ACKNOWLEDGED | NOTIFICATION_FAILED → RESOLVED

A rejected change raises ``InvalidTransitionError`` carrying the status
the alert actually had.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from backend.app.alerts.models import (
    DEFAULT_SEVERITY,
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    LocationFix,
    NotificationAttempt,
    SafetyEvent,
    SafetyEventKind,
    sources_for,
)
from backend.app.core.errors import (
    DuplicateAlertError,
    InvalidTransitionError,
    NotFoundError,
)
from backend.app.spatial.geo_index import format_distance
from backend.app.storage import operations as ops
from backend.app.storage.source_router import SourceRouter

logger = logging.getLogger(__name__)

# Reachable only through acknowledge() / resolve()
_OPERATOR_STATUSES = frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED})


@dataclass(frozen=True)
class AlertCreation:
    """Result of ``create_if_absent``: the open alert and whether it is new."""
    alert: Alert
    created: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def event_message(event: SafetyEvent) -> str:
    """Human-readable description stored on the alert."""
    if event.kind == SafetyEventKind.ZONE_ENTRY:
        where = event.zone_name or event.zone_id
        if event.distance_m is not None:
            return (
                f"Entered danger zone: {where} "
                f"({format_distance(event.distance_m)} from centre)"
            )
        return f"Entered danger zone: {where}"
    idle = event.detected_at - event.location.timestamp
    minutes = int(idle.total_seconds() // 60)
    return f"No activity detected for {minutes} minutes"


class AlertStore:
    """
    Parameters
    ----------
    router : SourceRouter
        All reads and writes go through it.
    clock : callable, optional
        Returns the current UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        router: SourceRouter,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._router = router
        self._clock = clock

    # ─── Creation ────────────────────────────────────────────────────────

    async def create_if_absent(self, event: SafetyEvent) -> AlertCreation:
        """
        Open an alert for ``event`` unless one of the same type is open.

        Returns the existing open alert (``created=False``) untouched when
        the (user, type) slot is taken.
        """
        alert_type = event.alert_type
        metadata: Dict[str, Any] = {
            "event_kind": event.kind.value,
            "detected_at": event.detected_at.isoformat(),
            "last_activity": event.location.timestamp.isoformat(),
        }
        if event.zone_name:
            metadata["zone_name"] = event.zone_name
        if event.recommendation:
            metadata["recommendation"] = event.recommendation

        now = self._clock()
        candidate = Alert(
            user_id=event.user_id,
            alert_type=alert_type,
            severity=DEFAULT_SEVERITY[alert_type],
            location=event.location,
            message=event_message(event),
            zone_id=event.zone_id,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )
        return await self._insert(candidate)

    async def create(
        self,
        user_id: str,
        alert_type: AlertType,
        location: LocationFix,
        *,
        message: str = "",
        severity: Optional[AlertSeverity] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        """
        Strict creation for manually triggered alerts.

        Raises
        ------
        DuplicateAlertError
            The user already has an open alert of this type.
        """
        now = self._clock()
        candidate = Alert(
            user_id=user_id,
            alert_type=alert_type,
            severity=severity or DEFAULT_SEVERITY[alert_type],
            location=location,
            message=message or f"{alert_type.value.upper()} triggered",
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        creation = await self._insert(candidate)
        if not creation.created:
            raise DuplicateAlertError(user_id, alert_type.value, creation.alert.alert_id)
        return creation.alert

    async def _insert(self, candidate: Alert) -> AlertCreation:
        result = await self._router.write(ops.insert_alert_if_absent(candidate.to_record()))
        alert = Alert.from_record(result["alert"])
        created = bool(result["created"])
        if created:
            logger.info(
                "Alert %s created: %s/%s for user %s",
                alert.alert_id, alert.alert_type.value, alert.severity.name, alert.user_id,
                extra={"alert_id": alert.alert_id, "user_id": alert.user_id},
            )
        else:
            logger.debug(
                "Open %s alert %s already exists for user %s",
                alert.alert_type.value, alert.alert_id, alert.user_id,
                extra={"alert_id": alert.alert_id, "user_id": alert.user_id},
            )
        return AlertCreation(alert=alert, created=created)

    # ─── Status changes ──────────────────────────────────────────────────

    async def transition(self, alert_id: str, new_status: AlertStatus) -> Alert:
        """
        Move an alert along the notification part of its lifecycle.

        Raises
        ------
        InvalidTransitionError
            ``new_status`` is not reachable from the alert's current status,
            or is ACKNOWLEDGED / RESOLVED (use ``acknowledge`` / ``resolve``).
        NotFoundError
            No alert with ``alert_id``.
        """
        if new_status in _OPERATOR_STATUSES:
            current = await self.get(alert_id)
            raise InvalidTransitionError(alert_id, current.status.value, new_status.value)
        return await self._compare_and_set(alert_id, new_status, {})

    async def acknowledge(self, alert_id: str, by: str) -> Alert:
        now = self._clock()
        alert = await self._compare_and_set(
            alert_id,
            AlertStatus.ACKNOWLEDGED,
            {"acknowledged_at": now, "acknowledged_by": by},
        )
        logger.info(
            "Alert %s acknowledged by %s", alert_id, by,
            extra={"alert_id": alert_id, "user_id": alert.user_id},
        )
        return alert

    async def resolve(self, alert_id: str, by: str, note: Optional[str] = None) -> Alert:
        now = self._clock()
        alert = await self._compare_and_set(
            alert_id,
            AlertStatus.RESOLVED,
            {"resolved_at": now, "resolved_by": by, "resolution_note": note},
        )
        logger.info(
            "Alert %s resolved by %s", alert_id, by,
            extra={"alert_id": alert_id, "user_id": alert.user_id},
        )
        return alert

    async def _compare_and_set(
        self,
        alert_id: str,
        new_status: AlertStatus,
        fields: Dict[str, Any],
    ) -> Alert:
        expected = [s.value for s in sources_for(new_status)]
        fields = {**fields, "updated_at": self._clock()}
        result = await self._router.write(
            ops.compare_and_set_status(alert_id, expected, new_status.value, fields)
        )
        if result["alert"] is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        alert = Alert.from_record(result["alert"])
        if not result["updated"]:
            raise InvalidTransitionError(alert_id, alert.status.value, new_status.value)
        logger.debug(
            "Alert %s → %s", alert_id, new_status.value,
            extra={"alert_id": alert_id},
        )
        return alert

    # ─── Queries ─────────────────────────────────────────────────────────

    async def get(self, alert_id: str) -> Alert:
        record = await self._router.read(ops.get_alert(alert_id))
        if record is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return Alert.from_record(record)

    async def find_open(self, user_id: str, alert_type: AlertType) -> Optional[Alert]:
        record = await self._router.read(ops.find_open_alert(user_id, alert_type.value))
        return Alert.from_record(record) if record else None

    async def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Alert]:
        records = await self._router.read(
            ops.list_alerts(status.value if status else None, user_id, limit)
        )
        return [Alert.from_record(r) for r in records]

    # ─── Notification attempts ───────────────────────────────────────────

    async def record_attempt(self, attempt: NotificationAttempt) -> NotificationAttempt:
        """
        Persist one attempt row.

        A pair that is already SENT is left as it is; the stored row is
        returned in that case.
        """
        result = await self._router.write(ops.upsert_attempt(attempt.to_record()))
        return NotificationAttempt.from_record(result["attempt"])

    async def list_attempts(self, alert_id: str) -> List[NotificationAttempt]:
        records = await self._router.read(ops.list_attempts(alert_id))
        return [NotificationAttempt.from_record(r) for r in records]
