"""
safety_scanner.py — Detects users in danger from their location pings.

Two signals:

    INACTIVITY   now − last_ping.timestamp  >  threshold      (strict)
    ZONE_ENTRY   last ping inside a DANGER zone (boundary inclusive);
                 the event names the nearest containing danger zone

Two entry points:

    scan_all()     periodic sweep over every active user (ScanScheduler)
    check_user()   incremental check for one incoming ping

═══════════════════════════════════════════════════════════════════════════
PER-USER STATE
═══════════════════════════════════════════════════════════════════════════

    ACTIVE ──(no ping for > threshold)──► STALE
      │                                      │
      └──(ping inside danger zone)──► IN_DANGER_ZONE ◄──┘

    State is recomputed on every evaluation and never stored. A zone
    signal outranks staleness when both hold.

═══════════════════════════════════════════════════════════════════════════
FAILURE ISOLATION
═══════════════════════════════════════════════════════════════════════════

    • Users with no location yet are skipped (not an error).
    • A failed location fetch, a malformed record or a failing event sink
      counts as one error and the sweep moves on to the next user.
    • A failed zone refresh keeps the previous snapshot.
    • scan_all() never raises; it returns a ScanSummary.
    • The cancellation token is checked between users, never mid-write.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from backend.app.alerts.models import (
    LocationFix,
    SafetyEvent,
    SafetyEventKind,
    UserSafetyState,
    Zone,
    ZoneKind,
    ZoneSnapshot,
)
from backend.app.core.errors import SafetyAPIError
from backend.app.spatial.geo_index import distance_meters, governing_zone
from backend.app.storage import operations as ops
from backend.app.storage.source_router import SourceRouter

logger = logging.getLogger(__name__)

# Receives each detected event; returns True when a new alert was opened
EventSink = Callable[[SafetyEvent], Awaitable[bool]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScanSummary:
    """Outcome of one sweep."""
    started_at: datetime
    completed_at: Optional[datetime] = None
    users_scanned: int = 0
    users_skipped: int = 0
    events_emitted: int = 0
    alerts_created: int = 0
    errors: int = 0
    zones_loaded: int = 0
    dispatches_settled: int = 0
    cancelled: bool = False
    states: Counter = field(default_factory=Counter)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "users_scanned": self.users_scanned,
            "users_skipped": self.users_skipped,
            "events_emitted": self.events_emitted,
            "alerts_created": self.alerts_created,
            "errors": self.errors,
            "zones_loaded": self.zones_loaded,
            "dispatches_settled": self.dispatches_settled,
            "cancelled": self.cancelled,
            "states": {s.value: self.states.get(s.value, 0) for s in UserSafetyState},
        }


@dataclass(frozen=True)
class UserCheck:
    """Result of evaluating one user's latest fix."""
    user_id: str
    state: UserSafetyState
    events: Tuple[SafetyEvent, ...] = ()


class SafetySignalScanner:
    """
    Parameters
    ----------
    router : SourceRouter
        Reads users, latest locations and zones.
    inactivity_threshold : timedelta
        A user whose last ping is older than this is STALE.
    zone_refresh_interval : timedelta
        Ping checks reload zones when the snapshot is older than this.
    clock : callable
        Current UTC time; injectable for tests.
    sink : EventSink, optional
        Where detected events go (the orchestrator). Can be set later with
        ``set_sink``.
    """

    def __init__(
        self,
        router: SourceRouter,
        *,
        inactivity_threshold: timedelta = timedelta(minutes=30),
        zone_refresh_interval: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
        sink: Optional[EventSink] = None,
    ) -> None:
        self._router = router
        self.inactivity_threshold = inactivity_threshold
        self.zone_refresh_interval = zone_refresh_interval
        self._clock = clock
        self._sink = sink
        self._snapshot: Optional[ZoneSnapshot] = None

    def set_sink(self, sink: EventSink) -> None:
        self._sink = sink

    @property
    def snapshot(self) -> Optional[ZoneSnapshot]:
        return self._snapshot

    # ─── Pure evaluation ─────────────────────────────────────────────────

    def evaluate(
        self,
        user_id: str,
        fix: LocationFix,
        snapshot: ZoneSnapshot,
        now: datetime,
    ) -> UserCheck:
        """Classify one fix against ``snapshot`` at time ``now``. No I/O."""
        events: List[SafetyEvent] = []
        state = UserSafetyState.ACTIVE

        if now - fix.timestamp > self.inactivity_threshold:
            state = UserSafetyState.STALE
            events.append(SafetyEvent(
                user_id=user_id,
                kind=SafetyEventKind.INACTIVITY,
                detected_at=now,
                location=fix,
            ))

        zone = governing_zone(fix.point, snapshot.zones)
        if zone is not None and zone.kind == ZoneKind.DANGER:
            state = UserSafetyState.IN_DANGER_ZONE
            events.append(SafetyEvent(
                user_id=user_id,
                kind=SafetyEventKind.ZONE_ENTRY,
                detected_at=now,
                location=fix,
                zone_id=zone.zone_id,
                zone_name=zone.name,
                recommendation=zone.recommendation,
                distance_m=distance_meters(fix.point, zone.center),
            ))

        return UserCheck(user_id=user_id, state=state, events=tuple(events))

    # ─── Zones ───────────────────────────────────────────────────────────

    async def refresh_zones(self) -> ZoneSnapshot:
        """Load every zone into a fresh immutable snapshot."""
        records = await self._router.read(ops.list_zones())
        zones: List[Zone] = []
        for record in records:
            try:
                zones.append(Zone.from_record(record))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed zone %s: %s", record.get("zone_id"), exc)
        self._snapshot = ZoneSnapshot(zones=tuple(zones), loaded_at=self._clock())
        logger.debug(
            "Zone snapshot loaded: %d zones (%d danger)",
            len(zones), len(self._snapshot.danger_zones),
        )
        return self._snapshot

    async def _current_snapshot(self) -> ZoneSnapshot:
        """Newest snapshot, reloaded when older than the refresh interval."""
        snapshot = self._snapshot
        if snapshot is not None and self._clock() - snapshot.loaded_at <= self.zone_refresh_interval:
            return snapshot
        try:
            return await self.refresh_zones()
        except SafetyAPIError as exc:
            if snapshot is None:
                raise
            logger.warning("Zone refresh failed, keeping previous snapshot: %s", exc)
            return snapshot

    # ─── Entry points ────────────────────────────────────────────────────

    async def check_user(self, user_id: str, fix: LocationFix) -> UserCheck:
        """
        Evaluate one ping against the current zone snapshot.

        The events are returned rather than sent to the sink: the ping
        handler acts on them itself so it can report the alerts back.
        """
        snapshot = await self._current_snapshot()
        return self.evaluate(user_id, fix, snapshot, self._clock())

    async def scan_all(self, cancel_event: Optional[asyncio.Event] = None) -> ScanSummary:
        """Sweep every active user once. Never raises."""
        summary = ScanSummary(started_at=self._clock())
        t0 = time.perf_counter()

        try:
            snapshot = await self.refresh_zones()
        except SafetyAPIError as exc:
            summary.errors += 1
            snapshot = self._snapshot or ZoneSnapshot(zones=(), loaded_at=summary.started_at)
            logger.error("Zone refresh failed at sweep start (%d zones kept): %s", len(snapshot), exc)
        summary.zones_loaded = len(snapshot)

        try:
            users = await self._router.read(ops.list_active_users())
        except SafetyAPIError as exc:
            summary.errors += 1
            summary.completed_at = self._clock()
            logger.error("Sweep aborted, could not list users: %s", exc)
            return summary

        for record in users:
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                logger.info("Sweep cancelled after %d users", summary.users_scanned)
                break
            await self._scan_one(record, snapshot, summary)

        summary.completed_at = self._clock()
        logger.info(
            "Sweep finished in %.0fms: %d scanned, %d skipped, %d events, "
            "%d alerts, %d errors",
            (time.perf_counter() - t0) * 1000,
            summary.users_scanned, summary.users_skipped, summary.events_emitted,
            summary.alerts_created, summary.errors,
        )
        return summary

    async def _scan_one(
        self,
        record: Dict[str, Any],
        snapshot: ZoneSnapshot,
        summary: ScanSummary,
    ) -> None:
        raw_id = record.get("user_id")
        if raw_id is None or str(raw_id) == "":
            summary.errors += 1
            logger.warning("Skipping user record without user_id: %r", record)
            return
        user_id = str(raw_id)

        try:
            location = await self._router.read(ops.latest_location(user_id))
            if location is None:
                summary.users_skipped += 1
                return
            fix = LocationFix.from_record(location)
            check = self.evaluate(user_id, fix, snapshot, self._clock())
        except (SafetyAPIError, KeyError, ValueError, TypeError) as exc:
            summary.errors += 1
            logger.warning(
                "Could not evaluate location for user %s: %s", user_id, exc,
                extra={"user_id": user_id},
            )
            return

        summary.users_scanned += 1
        summary.states[check.state.value] += 1

        for event in check.events:
            summary.events_emitted += 1
            if self._sink is None:
                continue
            try:
                if await self._sink(event):
                    summary.alerts_created += 1
            except Exception:
                summary.errors += 1
                logger.exception(
                    "Handling %s event for user %s failed", event.kind.value, user_id,
                    extra={"user_id": user_id},
                )
