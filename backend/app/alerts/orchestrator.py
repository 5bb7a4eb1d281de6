"""
orchestrator.py — Ties detection, alert creation and notification together.

    location ping ──► scanner.check_user ─┐
    sweep timer ────► scanner.scan_all ───┼─► SafetyEvent
                                          ▼
                          AlertStore.create_if_absent
                                          │ created?
                                          ▼
                      NotificationDispatcher.dispatch ──► attempts (audit)

Inbound operations (exposed over HTTP by api/v1):
    report_location, trigger_manual_alert, acknowledge_alert, resolve_alert,
    retry_dispatch, run_sweep, plus alert / attempt queries.

Each sweep first settles dispatches that stalled in NOTIFYING (see
NotificationDispatcher.settle_stalled), then scans every user.

An event whose (user, type) already has an open alert is absorbed: the
existing alert is returned and nobody is notified again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from backend.app.alerts.alert_store import AlertStore
from backend.app.alerts.dispatcher import NotificationDispatcher, recipients_for
from backend.app.alerts.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    DispatchReport,
    LocationFix,
    NotificationAttempt,
    SafetyEvent,
    User,
    UserSafetyState,
)
from backend.app.core.errors import (
    InvalidTransitionError,
    StorageUnavailableError,
    ValidationError,
)
from backend.app.monitoring.safety_scanner import SafetySignalScanner, ScanSummary
from backend.app.spatial.geo_index import GeoPoint
from backend.app.storage import operations as ops
from backend.app.storage.source_router import SourceRouter

logger = logging.getLogger(__name__)

MANUAL_ALERT_TYPES = frozenset({AlertType.SOS, AlertType.PANIC})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EventOutcome:
    """What handling one SafetyEvent did."""
    event: SafetyEvent
    alert: Alert
    created: bool
    report: Optional[DispatchReport] = None
    dispatch_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.kind.value,
            "zone_id": self.event.zone_id,
            "alert": self.alert.to_dict(),
            "created": self.created,
            "dispatch": self.report.to_dict() if self.report else None,
            "dispatch_error": self.dispatch_error,
        }


@dataclass
class LocationReport:
    """Response to one location ping."""
    user_id: str
    location: LocationFix
    state: UserSafetyState
    outcomes: List[EventOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "location": self.location.to_dict(),
            "state": self.state.value,
            "events": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class ManualAlertResult:
    alert: Alert
    report: Optional[DispatchReport] = None
    dispatch_error: Optional[str] = None


class EmergencyOrchestrator:
    """
    Parameters
    ----------
    router : SourceRouter
        For the user and location reads/writes the orchestrator makes itself.
    store : AlertStore
    dispatcher : NotificationDispatcher
    scanner : SafetySignalScanner
        Its event sink is pointed at this orchestrator.
    stalled_dispatch_after : timedelta
        A NOTIFYING alert untouched for longer than this is settled by the
        next sweep.
    """

    def __init__(
        self,
        router: SourceRouter,
        store: AlertStore,
        dispatcher: NotificationDispatcher,
        scanner: SafetySignalScanner,
        *,
        stalled_dispatch_after: timedelta = timedelta(minutes=2),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.router = router
        self.store = store
        self.dispatcher = dispatcher
        self.scanner = scanner
        self.stalled_dispatch_after = stalled_dispatch_after
        self._clock = clock
        scanner.set_sink(self._on_sweep_event)

    # ─── Event handling ──────────────────────────────────────────────────

    async def handle_event(self, event: SafetyEvent) -> EventOutcome:
        """Open an alert for ``event`` (once) and notify if it is new."""
        creation = await self.store.create_if_absent(event)
        outcome = EventOutcome(event=event, alert=creation.alert, created=creation.created)
        if creation.created:
            outcome.report, outcome.dispatch_error = await self._notify(creation.alert)
            if outcome.report is not None:
                outcome.alert = await self.store.get(creation.alert.alert_id)
        return outcome

    async def _on_sweep_event(self, event: SafetyEvent) -> bool:
        outcome = await self.handle_event(event)
        return outcome.created

    async def _load_user(self, user_id: str) -> Optional[User]:
        record = await self.router.read(ops.get_user(user_id))
        return User.from_record(record) if record else None

    async def _notify(self, alert: Alert):
        """
        Dispatch a freshly created (or retried) alert.

        Returns (report, error). Lost races and storage outages leave the
        alert in place for a later retry instead of failing the caller.
        """
        try:
            user = await self._load_user(alert.user_id)
            if user is None:
                logger.warning(
                    "Alert %s: user %s not found, notifying emergency services only",
                    alert.alert_id, alert.user_id,
                    extra={"alert_id": alert.alert_id, "user_id": alert.user_id},
                )
            recipients = recipients_for(alert, user) if user else []
            report = await self.dispatcher.dispatch(alert, recipients, user=user)
            return report, None
        except (InvalidTransitionError, StorageUnavailableError) as exc:
            logger.error(
                "Dispatch of alert %s did not complete: %s", alert.alert_id, exc.message,
                extra={"alert_id": alert.alert_id},
            )
            return None, exc.message

    # ─── Inbound operations ──────────────────────────────────────────────

    async def report_location(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        accuracy_m: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> LocationReport:
        """
        Store a location ping and act on what it reveals.

        Raises
        ------
        ValidationError
            Coordinates out of range or a negative accuracy.
        """
        try:
            GeoPoint(latitude, longitude)
        except ValueError as exc:
            raise ValidationError(str(exc), field="latitude/longitude") from exc
        if accuracy_m is not None and accuracy_m < 0:
            raise ValidationError("Accuracy must be non-negative", field="accuracy_m")

        fix = LocationFix(
            latitude=latitude,
            longitude=longitude,
            accuracy_m=accuracy_m,
            timestamp=timestamp or self._clock(),
        )
        await self.router.write(ops.append_location(user_id, {
            "latitude": fix.latitude,
            "longitude": fix.longitude,
            "accuracy_m": fix.accuracy_m,
            "timestamp": fix.timestamp,
        }))

        check = await self.scanner.check_user(user_id, fix)
        report = LocationReport(user_id=user_id, location=fix, state=check.state)
        for event in check.events:
            report.outcomes.append(await self.handle_event(event))
        return report

    async def trigger_manual_alert(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        alert_type: AlertType = AlertType.SOS,
        message: str = "",
    ) -> ManualAlertResult:
        """
        Raise an SOS / PANIC alert (CRITICAL) and notify immediately.

        Raises
        ------
        ValidationError
            Not a manual alert type, or invalid coordinates.
        DuplicateAlertError
            An alert of this type is already open for the user.
        """
        if alert_type not in MANUAL_ALERT_TYPES:
            raise ValidationError(
                f"Manual alerts must be one of {sorted(t.value for t in MANUAL_ALERT_TYPES)}",
                field="alert_type",
            )
        try:
            GeoPoint(latitude, longitude)
        except ValueError as exc:
            raise ValidationError(str(exc), field="latitude/longitude") from exc

        now = self._clock()
        alert = await self.store.create(
            user_id,
            alert_type,
            LocationFix(latitude=latitude, longitude=longitude, timestamp=now),
            message=message or "Emergency button pressed",
            severity=AlertSeverity.CRITICAL,
            metadata={"source": "manual"},
        )
        report, error = await self._notify(alert)
        if report is not None:
            alert = await self.store.get(alert.alert_id)
        return ManualAlertResult(alert=alert, report=report, dispatch_error=error)

    async def acknowledge_alert(self, alert_id: str, actor_id: str) -> Alert:
        return await self.store.acknowledge(alert_id, actor_id)

    async def resolve_alert(
        self,
        alert_id: str,
        actor_id: str,
        resolution_note: Optional[str] = None,
    ) -> Alert:
        return await self.store.resolve(alert_id, actor_id, resolution_note)

    async def retry_dispatch(self, alert_id: str) -> DispatchReport:
        """
        Re-dispatch a NOTIFICATION_FAILED alert; already-sent pairs are kept.

        Raises
        ------
        InvalidTransitionError
            The alert is not in NOTIFICATION_FAILED.
        """
        alert = await self.store.get(alert_id)
        if alert.status != AlertStatus.NOTIFICATION_FAILED:
            raise InvalidTransitionError(
                alert_id, alert.status.value, AlertStatus.NOTIFYING.value
            )
        user = await self._load_user(alert.user_id)
        recipients = recipients_for(alert, user) if user else []
        return await self.dispatcher.dispatch(alert, recipients, user=user)

    async def settle_stalled_dispatches(self) -> List[Alert]:
        """Settle alerts left in NOTIFYING by a dispatch that never finished."""
        return await self.dispatcher.settle_stalled(self.stalled_dispatch_after)

    async def run_sweep(self, cancel_event: Optional[asyncio.Event] = None) -> ScanSummary:
        """Settle stalled dispatches, then scan every user. Never raises."""
        settled: List[Alert] = []
        settle_error = False
        try:
            settled = await self.settle_stalled_dispatches()
        except StorageUnavailableError as exc:
            settle_error = True
            logger.error("Could not look for stalled dispatches: %s", exc.message)

        summary = await self.scanner.scan_all(cancel_event)
        summary.dispatches_settled = len(settled)
        if settle_error:
            summary.errors += 1
        return summary

    # ─── Queries ─────────────────────────────────────────────────────────

    async def get_alert(self, alert_id: str) -> Alert:
        return await self.store.get(alert_id)

    async def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Alert]:
        return await self.store.list_alerts(status=status, user_id=user_id, limit=limit)

    async def list_attempts(self, alert_id: str) -> List[NotificationAttempt]:
        await self.store.get(alert_id)
        return await self.store.list_attempts(alert_id)

    async def close(self) -> None:
        for channel in self.dispatcher.channels.values():
            await channel.close()
        await self.router.close()
