"""
test_safety_scanner.py — Tests for danger detection and the sweep loop.

Covers:
    • Inactivity edge: exactly the threshold is fine, one second more is not
    • Danger-zone entry (999 m in / 1001 m out) and state precedence
    • Zone snapshot refresh, malformed zones and refresh failures
    • Sweep isolation: missing locations, bad records and a failing sink
    • Unusable location rows (no timestamp, out-of-range coordinates) and
      user rows without an id
    • Cancellation between users
    • ScanScheduler run_once / start / stop

Run with:
    pytest tests/test_safety_scanner.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from backend.app.alerts.models import (
    LocationFix,
    SafetyEvent,
    SafetyEventKind,
    UserSafetyState,
    Zone,
    ZoneKind,
    ZoneSnapshot,
)
from backend.app.core.errors import BackendUnavailableError, StorageUnavailableError
from backend.app.monitoring.safety_scanner import SafetySignalScanner, ScanSummary
from backend.app.monitoring.scheduler import ScanScheduler
from backend.app.spatial.geo_index import GeoPoint, destination_point
from backend.app.storage.memory_backend import MemoryBackend
from backend.app.storage.source_router import SourceRouter


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
ZONE_CENTRE = GeoPoint(28.6129, 77.2295)
OUTSIDE = destination_point(ZONE_CENTRE, 90.0, 5000.0)


class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FlakyBackend(MemoryBackend):
    """Memory backend whose zone and location reads can be switched off."""

    def __init__(self) -> None:
        super().__init__(name="flaky")
        self.zones_down = False
        self.users_down = False
        self.broken_users: set = set()

    async def _zones_list(self, kind=None):
        if self.zones_down:
            raise BackendUnavailableError(self.name, "zones offline")
        return await super()._zones_list(kind)

    async def _users_list_active(self):
        if self.users_down:
            raise BackendUnavailableError(self.name, "users offline")
        return await super()._users_list_active()

    async def _locations_latest(self, user_id):
        if user_id in self.broken_users:
            raise BackendUnavailableError(self.name, "location shard offline")
        return await super()._locations_latest(user_id)


def _make_zone_record(
    zone_id: str = "Z1",
    kind: str = "danger",
    radius_m: float = 1000.0,
    center: GeoPoint = ZONE_CENTRE,
) -> dict:
    return {
        "zone_id": zone_id,
        "name": "Old quarry" if kind == "danger" else "Tourist centre",
        "latitude": center.latitude,
        "longitude": center.longitude,
        "radius_m": radius_m,
        "kind": kind,
        "recommendation": "Leave via the north gate",
    }


def _seed_user(
    backend: MemoryBackend,
    user_id: str,
    point: GeoPoint = OUTSIDE,
    age: timedelta = timedelta(minutes=1),
) -> None:
    backend.add_user({"user_id": user_id, "name": user_id, "is_active": True})
    backend.add_location(user_id, {
        "latitude": point.latitude,
        "longitude": point.longitude,
        "timestamp": NOW - age,
    })


def _make_scanner(backend: MemoryBackend, clock=None, sink=None) -> SafetySignalScanner:
    return SafetySignalScanner(
        SourceRouter(backend),
        inactivity_threshold=timedelta(minutes=30),
        zone_refresh_interval=timedelta(minutes=5),
        clock=clock or _Clock(),
        sink=sink,
    )


def _make_fix(point: GeoPoint = OUTSIDE, age: timedelta = timedelta(0)) -> LocationFix:
    return LocationFix(point.latitude, point.longitude, NOW - age)


def _snapshot(*records: dict) -> ZoneSnapshot:
    return ZoneSnapshot(zones=tuple(Zone.from_record(r) for r in records), loaded_at=NOW)


class _RecordingSink:
    def __init__(self, result: bool = True) -> None:
        self.events: List[SafetyEvent] = []
        self.result = result

    async def __call__(self, event: SafetyEvent) -> bool:
        self.events.append(event)
        return self.result


# ═══════════════════════════════════════════════════════════════════════════
# Pure evaluation
# ═══════════════════════════════════════════════════════════════════════════

class TestEvaluate:

    def setup_method(self):
        self.scanner = _make_scanner(MemoryBackend())
        self.zones = _snapshot(_make_zone_record())

    def test_recent_ping_outside_zones_is_active(self):
        check = self.scanner.evaluate("U1", _make_fix(), self.zones, NOW)
        assert check.state == UserSafetyState.ACTIVE
        assert check.events == ()

    def test_exactly_threshold_is_not_stale(self):
        fix = _make_fix(age=timedelta(minutes=30))
        check = self.scanner.evaluate("U1", fix, self.zones, NOW)
        assert check.state == UserSafetyState.ACTIVE
        assert check.events == ()

    def test_one_second_past_threshold_is_stale(self):
        fix = _make_fix(age=timedelta(minutes=30, seconds=1))
        check = self.scanner.evaluate("U1", fix, self.zones, NOW)
        assert check.state == UserSafetyState.STALE
        assert [e.kind for e in check.events] == [SafetyEventKind.INACTIVITY]
        assert check.events[0].location == fix

    def test_999m_from_centre_is_zone_entry(self):
        fix = _make_fix(point=destination_point(ZONE_CENTRE, 45.0, 999.0))
        check = self.scanner.evaluate("U1", fix, self.zones, NOW)
        assert check.state == UserSafetyState.IN_DANGER_ZONE
        event = check.events[0]
        assert event.kind == SafetyEventKind.ZONE_ENTRY
        assert event.zone_id == "Z1"
        assert event.zone_name == "Old quarry"
        assert event.recommendation == "Leave via the north gate"
        assert event.distance_m == pytest.approx(999.0, abs=0.01)

    def test_1001m_from_centre_is_outside(self):
        fix = _make_fix(point=destination_point(ZONE_CENTRE, 45.0, 1001.0))
        check = self.scanner.evaluate("U1", fix, self.zones, NOW)
        assert check.state == UserSafetyState.ACTIVE

    def test_safe_zone_raises_nothing(self):
        zones = _snapshot(_make_zone_record(kind="safe"))
        check = self.scanner.evaluate("U1", _make_fix(point=ZONE_CENTRE), zones, NOW)
        assert check.state == UserSafetyState.ACTIVE
        assert check.events == ()

    def test_stale_inside_danger_zone_reports_both(self):
        fix = _make_fix(point=ZONE_CENTRE, age=timedelta(hours=2))
        check = self.scanner.evaluate("U1", fix, self.zones, NOW)
        assert check.state == UserSafetyState.IN_DANGER_ZONE
        assert {e.kind for e in check.events} == {
            SafetyEventKind.INACTIVITY, SafetyEventKind.ZONE_ENTRY,
        }

    def test_danger_outranks_overlapping_safe_zone(self):
        zones = _snapshot(
            _make_zone_record("S1", kind="safe", radius_m=5000.0),
            _make_zone_record("D1", kind="danger", radius_m=500.0),
        )
        check = self.scanner.evaluate("U1", _make_fix(point=ZONE_CENTRE), zones, NOW)
        assert check.events[0].zone_id == "D1"

    def test_location_record_requires_timestamp(self):
        with pytest.raises(ValueError, match="timestamp"):
            LocationFix.from_record({"latitude": 28.6, "longitude": 77.2, "timestamp": None})

    def test_location_record_rejects_bad_latitude(self):
        with pytest.raises(ValueError, match="Latitude"):
            LocationFix.from_record({"latitude": 95.0, "longitude": 77.2, "timestamp": NOW})


# ═══════════════════════════════════════════════════════════════════════════
# Zone snapshots
# ═══════════════════════════════════════════════════════════════════════════

class TestZoneSnapshot:

    def test_refresh_skips_malformed_zones(self):
        backend = MemoryBackend()
        backend.add_zone(_make_zone_record("Z1"))
        backend.add_zone({"zone_id": "BAD", "name": "no centre", "radius_m": 10.0})
        backend.add_zone({**_make_zone_record("OOR"), "latitude": 123.0})
        snapshot = asyncio.run(_make_scanner(backend).refresh_zones())
        assert [z.zone_id for z in snapshot.zones] == ["Z1"]
        assert len(snapshot.danger_zones) == 1

    def test_check_user_reuses_fresh_snapshot(self):
        backend = MemoryBackend()
        backend.add_zone(_make_zone_record())
        clock = _Clock()
        scanner = _make_scanner(backend, clock=clock)

        async def run():
            await scanner.check_user("U1", _make_fix())
            first = scanner.snapshot
            clock.now = NOW + timedelta(minutes=4)
            await scanner.check_user("U1", _make_fix())
            return first, scanner.snapshot

        first, second = asyncio.run(run())
        assert first is second

    def test_check_user_reloads_stale_snapshot(self):
        backend = MemoryBackend()
        clock = _Clock()
        scanner = _make_scanner(backend, clock=clock)

        async def run():
            await scanner.check_user("U1", _make_fix())
            backend.add_zone(_make_zone_record())
            clock.now = NOW + timedelta(minutes=6)
            fix = LocationFix(ZONE_CENTRE.latitude, ZONE_CENTRE.longitude, clock.now)
            return await scanner.check_user("U1", fix)

        check = asyncio.run(run())
        assert check.state == UserSafetyState.IN_DANGER_ZONE

    def test_check_user_does_not_call_sink(self):
        backend = MemoryBackend()
        backend.add_zone(_make_zone_record())
        sink = _RecordingSink()
        scanner = _make_scanner(backend, sink=sink)
        check = asyncio.run(scanner.check_user("U1", _make_fix(point=ZONE_CENTRE)))
        assert len(check.events) == 1
        assert sink.events == []

    def test_failed_refresh_keeps_previous_snapshot(self):
        backend = _FlakyBackend()
        backend.add_zone(_make_zone_record())
        clock = _Clock()
        scanner = _make_scanner(backend, clock=clock)

        async def run():
            await scanner.refresh_zones()
            backend.zones_down = True
            clock.now = NOW + timedelta(minutes=10)
            fix = LocationFix(ZONE_CENTRE.latitude, ZONE_CENTRE.longitude, clock.now)
            return await scanner.check_user("U1", fix)

        check = asyncio.run(run())
        assert check.state == UserSafetyState.IN_DANGER_ZONE

    def test_failed_first_refresh_raises_for_ping_checks(self):
        backend = _FlakyBackend()
        backend.zones_down = True
        with pytest.raises(StorageUnavailableError):
            asyncio.run(_make_scanner(backend).check_user("U1", _make_fix()))


# ═══════════════════════════════════════════════════════════════════════════
# Sweep
# ═══════════════════════════════════════════════════════════════════════════

class TestScanAll:

    def test_sweep_emits_events_and_counts(self):
        backend = MemoryBackend()
        backend.add_zone(_make_zone_record())
        _seed_user(backend, "fine")
        _seed_user(backend, "idle", age=timedelta(minutes=31))
        _seed_user(backend, "lost", point=ZONE_CENTRE)
        sink = _RecordingSink()

        summary = asyncio.run(_make_scanner(backend, sink=sink).scan_all())
        assert summary.users_scanned == 3
        assert summary.events_emitted == 2
        assert summary.alerts_created == 2
        assert summary.errors == 0
        assert summary.zones_loaded == 1
        assert summary.states["active"] == 1
        assert summary.states["stale"] == 1
        assert summary.states["in_danger_zone"] == 1
        assert {(e.user_id, e.kind) for e in sink.events} == {
            ("idle", SafetyEventKind.INACTIVITY),
            ("lost", SafetyEventKind.ZONE_ENTRY),
        }

    def test_inactivity_edge_in_sweep(self):
        backend = MemoryBackend()
        _seed_user(backend, "edge", age=timedelta(minutes=30))
        _seed_user(backend, "past", age=timedelta(minutes=30, seconds=1))
        sink = _RecordingSink()

        asyncio.run(_make_scanner(backend, sink=sink).scan_all())
        assert [e.user_id for e in sink.events] == ["past"]

    def test_user_without_location_is_skipped(self):
        backend = MemoryBackend()
        backend.add_user({"user_id": "new", "is_active": True})
        _seed_user(backend, "idle", age=timedelta(hours=1))

        summary = asyncio.run(_make_scanner(backend, sink=_RecordingSink()).scan_all())
        assert summary.users_skipped == 1
        assert summary.users_scanned == 1
        assert summary.errors == 0

    def test_inactive_users_are_not_scanned(self):
        backend = MemoryBackend()
        backend.add_user({"user_id": "gone", "is_active": False})
        backend.add_location("gone", {"latitude": 0.0, "longitude": 0.0, "timestamp": NOW})
        summary = asyncio.run(_make_scanner(backend).scan_all())
        assert summary.users_scanned == 0

    def test_failures_are_isolated_per_user(self):
        backend = _FlakyBackend()
        _seed_user(backend, "a", age=timedelta(hours=1))
        _seed_user(backend, "b", age=timedelta(hours=1))
        _seed_user(backend, "c", age=timedelta(hours=1))
        backend.broken_users.add("b")
        sink = _RecordingSink()

        summary = asyncio.run(_make_scanner(backend, sink=sink).scan_all())
        assert summary.errors == 1
        assert summary.users_scanned == 2
        assert [e.user_id for e in sink.events] == ["a", "c"]

    def test_malformed_location_counts_as_error(self):
        backend = MemoryBackend()
        backend.add_user({"user_id": "bad", "is_active": True})
        backend.add_location("bad", {"latitude": 1.0, "timestamp": NOW})
        _seed_user(backend, "ok")

        summary = asyncio.run(_make_scanner(backend).scan_all())
        assert summary.errors == 1
        assert summary.users_scanned == 1

    @pytest.mark.parametrize("location", [
        {"latitude": 28.6, "longitude": 77.2, "timestamp": None},
        {"latitude": 95.0, "longitude": 77.2, "timestamp": NOW},
        {"latitude": 28.6, "longitude": 181.0, "timestamp": NOW},
    ])
    def test_unusable_location_counts_as_error(self, location):
        backend = MemoryBackend()
        backend.add_user({"user_id": "bad", "is_active": True})
        backend.add_location("bad", location)
        _seed_user(backend, "ok", age=timedelta(hours=1))
        sink = _RecordingSink()

        summary = asyncio.run(_make_scanner(backend, sink=sink).scan_all())
        assert summary.errors == 1
        assert summary.users_scanned == 1
        assert [e.user_id for e in sink.events] == ["ok"]

    def test_user_record_without_id_is_not_queried(self):
        class _Backend(MemoryBackend):
            def __init__(self) -> None:
                super().__init__()
                self.queried: List[str] = []

            async def _users_list_active(self):
                users = await super()._users_list_active()
                return [{"name": "ghost", "is_active": True}] + users

            async def _locations_latest(self, user_id):
                self.queried.append(user_id)
                return await super()._locations_latest(user_id)

        backend = _Backend()
        _seed_user(backend, "ok")

        summary = asyncio.run(_make_scanner(backend).scan_all())
        assert summary.errors == 1
        assert summary.users_scanned == 1
        assert backend.queried == ["ok"]

    def test_failing_sink_does_not_stop_the_sweep(self):
        backend = MemoryBackend()
        _seed_user(backend, "a", age=timedelta(hours=1))
        _seed_user(backend, "b", age=timedelta(hours=1))
        seen = []

        async def sink(event: SafetyEvent) -> bool:
            seen.append(event.user_id)
            if event.user_id == "a":
                raise RuntimeError("dispatcher exploded")
            return True

        summary = asyncio.run(_make_scanner(backend, sink=sink).scan_all())
        assert seen == ["a", "b"]
        assert summary.errors == 1
        assert summary.alerts_created == 1

    def test_absorbed_events_are_not_new_alerts(self):
        backend = MemoryBackend()
        _seed_user(backend, "idle", age=timedelta(hours=1))
        summary = asyncio.run(
            _make_scanner(backend, sink=_RecordingSink(result=False)).scan_all()
        )
        assert summary.events_emitted == 1
        assert summary.alerts_created == 0

    def test_zone_failure_at_sweep_start_still_checks_inactivity(self):
        backend = _FlakyBackend()
        backend.zones_down = True
        _seed_user(backend, "idle", age=timedelta(hours=1))
        sink = _RecordingSink()

        summary = asyncio.run(_make_scanner(backend, sink=sink).scan_all())
        assert summary.errors == 1
        assert summary.zones_loaded == 0
        assert [e.kind for e in sink.events] == [SafetyEventKind.INACTIVITY]

    def test_user_listing_failure_returns_summary(self):
        backend = _FlakyBackend()
        backend.users_down = True
        summary = asyncio.run(_make_scanner(backend).scan_all())
        assert summary.errors == 1
        assert summary.users_scanned == 0
        assert summary.completed_at is not None

    def test_cancellation_between_users(self):
        backend = MemoryBackend()
        for user_id in ("a", "b", "c"):
            _seed_user(backend, user_id, age=timedelta(hours=1))
        cancel = asyncio.Event()

        async def sink(event: SafetyEvent) -> bool:
            cancel.set()
            return True

        summary = asyncio.run(_make_scanner(backend, sink=sink).scan_all(cancel))
        assert summary.cancelled is True
        assert summary.users_scanned == 1

    def test_summary_to_dict(self):
        backend = MemoryBackend()
        _seed_user(backend, "a")
        d = asyncio.run(_make_scanner(backend).scan_all()).to_dict()
        assert d["users_scanned"] == 1
        assert d["states"] == {"active": 1, "stale": 0, "in_danger_zone": 0}
        assert d["cancelled"] is False
        assert d["dispatches_settled"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class TestScanScheduler:

    def test_run_once_records_history(self):
        calls = []

        async def sweep(cancel_event):
            calls.append(cancel_event)
            return ScanSummary(started_at=NOW, completed_at=NOW)

        async def run():
            scheduler = ScanScheduler(sweep, interval=timedelta(minutes=5), history_size=2)
            for _ in range(3):
                await scheduler.run_once()
            return scheduler

        scheduler = asyncio.run(run())
        assert scheduler.sweeps_run == 3
        assert len(scheduler.history) == 2
        assert scheduler.last_summary is not None
        assert all(isinstance(c, asyncio.Event) and not c.is_set() for c in calls)

    def test_start_and_stop(self):
        async def sweep(cancel_event):
            return ScanSummary(started_at=NOW, completed_at=NOW)

        async def run():
            scheduler = ScanScheduler(sweep, interval=timedelta(seconds=0.01))
            await scheduler.start()
            assert scheduler.is_running
            await asyncio.sleep(0.05)
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(run())
        assert not scheduler.is_running
        assert scheduler.sweeps_run >= 2
        status = scheduler.status()
        assert status["running"] is False
        assert status["last_sweep"]["started_at"] == NOW.isoformat()

    def test_stop_signals_running_sweep(self):
        seen = {}

        async def sweep(cancel_event):
            await cancel_event.wait()
            seen["cancelled"] = cancel_event.is_set()
            return ScanSummary(started_at=NOW, completed_at=NOW, cancelled=True)

        async def run():
            scheduler = ScanScheduler(sweep, interval=timedelta(minutes=5))
            await scheduler.start()
            await asyncio.sleep(0.01)
            await asyncio.wait_for(scheduler.stop(), timeout=1.0)
            return scheduler

        scheduler = asyncio.run(run())
        assert seen["cancelled"] is True
        assert scheduler.last_summary.cancelled is True

    def test_crashing_sweep_keeps_loop_alive(self):
        calls = []

        async def sweep(cancel_event):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return ScanSummary(started_at=NOW, completed_at=NOW)

        async def run():
            scheduler = ScanScheduler(sweep, interval=timedelta(seconds=0.01))
            await scheduler.start()
            await asyncio.sleep(0.05)
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(run())
        assert len(calls) >= 2
        assert scheduler.sweeps_run == len(calls) - 1
