"""
test_orchestrator.py — End-to-end flow through the wired engine.

Covers:
    • Location ping → danger-zone detection → one alert → notifications
    • Repeat pings are absorbed by the open alert (nobody is re-notified)
    • Manual SOS / PANIC, duplicates and invalid input
    • Retry of a failed dispatch and the operator lifecycle
    • Sweep events routed through the orchestrator
    • Storage failing mid-dispatch and the sweep settling stalled alerts

Run with:
    pytest tests/test_orchestrator.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from backend.app.alerts.channels.base import Channel
from backend.app.alerts.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    AttemptOutcome,
    DeliveryResult,
    NotificationChannel,
    Recipient,
    UserSafetyState,
)
from backend.app.core.config import Settings
from backend.app.core.dependencies import SafetyEngine, build_engine
from backend.app.core.errors import (
    BackendUnavailableError,
    ChannelSendError,
    DuplicateAlertError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from backend.app.spatial.geo_index import GeoPoint, destination_point
from backend.app.storage import operations as ops
from backend.app.storage.memory_backend import MemoryBackend
from backend.app.storage.source_router import SourceRouter


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
QUARRY = GeoPoint(28.6129, 77.2295)
HOTEL = destination_point(QUARRY, 180.0, 3000.0)
WEBHOOK_URL = "https://dispatch.example.org/hooks/alerts"


class RecordingChannel(Channel):
    def __init__(self, channel: NotificationChannel, *, fail: bool = False) -> None:
        self.channel = channel
        self.fail = fail
        self.sent: List[Tuple[str, Optional[str]]] = []

    @property
    def is_configured(self) -> bool:
        return True

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return {
            NotificationChannel.SMS: recipient.phone,
            NotificationChannel.EMAIL: recipient.email,
            NotificationChannel.PUSH: recipient.push_token,
            NotificationChannel.WEBHOOK: WEBHOOK_URL,
        }[self.channel]

    async def send(self, alert, recipient, user=None) -> DeliveryResult:
        if self.fail:
            raise ChannelSendError(self.channel.value, "gateway down")
        self.sent.append((alert.alert_id, self.address_for(recipient)))
        return DeliveryResult(success=True)


class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FaultyBackend(MemoryBackend):
    """Memory backend that can refuse status writes, attempt rows or alert listings."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_statuses: set = set()
        self.attempts_down = False
        self.listing_down = False

    async def _alerts_compare_and_set(self, alert_id, expected, status, fields):
        if status in self.failing_statuses:
            raise BackendUnavailableError(self.name, f"cannot write status {status}")
        return await super()._alerts_compare_and_set(alert_id, expected, status, fields)

    async def _attempts_upsert(self, attempt):
        if self.attempts_down:
            raise BackendUnavailableError(self.name, "attempts table offline")
        return await super()._attempts_upsert(attempt)

    async def _alerts_list(self, status=None, user_id=None, limit=100):
        if self.listing_down:
            raise BackendUnavailableError(self.name, "alert index offline")
        return await super()._alerts_list(status, user_id, limit)


def _make_backend(backend: Optional[MemoryBackend] = None) -> MemoryBackend:
    if backend is None:
        backend = MemoryBackend()
    backend.add_user({
        "user_id": "U1",
        "name": "Asha",
        "is_active": True,
        "phone": "+919800000001",
        "emergency_contacts": [
            {"name": "Ravi", "phone": "+919800000002", "relationship": "brother"},
        ],
    })
    backend.add_zone({
        "zone_id": "Z1",
        "name": "Old quarry",
        "latitude": QUARRY.latitude,
        "longitude": QUARRY.longitude,
        "radius_m": 1000.0,
        "kind": "danger",
        "recommendation": "Leave via the north gate",
    })
    return backend


def _make_engine(backend: MemoryBackend, *, fail: bool = False, clock=None):
    channels = {ch: RecordingChannel(ch, fail=fail) for ch in NotificationChannel}
    config = Settings(
        ENABLE_SCHEDULER=False,
        INACTIVITY_THRESHOLD_MINUTES=30.0,
        DISPATCH_SETTLE_BACKOFF_SECONDS=0.0,
        STALLED_DISPATCH_MINUTES=2.0,
    )
    engine = build_engine(
        config,
        router=SourceRouter(backend),
        channels=list(channels.values()),
        clock=clock or (lambda: NOW),
    )
    return engine, channels


def _run(coro_fn, backend: Optional[MemoryBackend] = None, *, fail: bool = False, clock=None):
    """Build the engine inside the loop and run ``coro_fn(engine, channels)``."""
    backend = backend or _make_backend()

    async def main():
        engine, channels = _make_engine(backend, fail=fail, clock=clock)
        return await coro_fn(engine, channels)

    return asyncio.run(main())


# ═══════════════════════════════════════════════════════════════════════════
# Location pings
# ═══════════════════════════════════════════════════════════════════════════

class TestReportLocation:

    def test_ping_inside_danger_zone_opens_and_notifies(self):
        async def flow(engine: SafetyEngine, channels):
            report = await engine.orchestrator.report_location(
                "U1", QUARRY.latitude, QUARRY.longitude, accuracy_m=8.0
            )
            attempts = await engine.orchestrator.list_attempts(report.outcomes[0].alert.alert_id)
            return report, attempts, channels

        report, attempts, channels = _run(flow)
        assert report.state == UserSafetyState.IN_DANGER_ZONE
        assert len(report.outcomes) == 1

        outcome = report.outcomes[0]
        assert outcome.created is True
        assert outcome.alert.alert_type == AlertType.ZONE_ENTRY
        assert outcome.alert.status == AlertStatus.NOTIFIED
        assert outcome.alert.zone_id == "Z1"
        assert outcome.report.final_status == AlertStatus.NOTIFIED

        sms = [addr for _, addr in channels[NotificationChannel.SMS].sent]
        assert sorted(sms) == ["+919800000001", "+919800000002"]
        assert [addr for _, addr in channels[NotificationChannel.WEBHOOK].sent] == [WEBHOOK_URL]
        assert len(attempts) == 3
        assert all(a.outcome == AttemptOutcome.SENT for a in attempts)

    def test_repeat_ping_is_absorbed(self):
        backend = _make_backend()

        async def flow(engine, channels):
            first = await engine.orchestrator.report_location("U1", QUARRY.latitude, QUARRY.longitude)
            second = await engine.orchestrator.report_location("U1", QUARRY.latitude, QUARRY.longitude)
            return first, second, channels

        first, second, channels = _run(flow, backend)
        assert second.outcomes[0].created is False
        assert second.outcomes[0].alert.alert_id == first.outcomes[0].alert.alert_id
        assert second.outcomes[0].report is None
        assert len(channels[NotificationChannel.SMS].sent) == 2
        assert backend.alert_count == 1

    def test_ping_outside_zones_is_stored_only(self):
        backend = _make_backend()

        async def flow(engine, channels):
            report = await engine.orchestrator.report_location("U1", HOTEL.latitude, HOTEL.longitude)
            latest = await engine.router.read(ops.latest_location("U1"))
            return report, latest

        report, latest = _run(flow, backend)
        assert report.state == UserSafetyState.ACTIVE
        assert report.outcomes == []
        assert latest["latitude"] == pytest.approx(HOTEL.latitude)
        assert backend.alert_count == 0

    def test_report_to_dict(self):
        async def flow(engine, channels):
            return await engine.orchestrator.report_location("U1", QUARRY.latitude, QUARRY.longitude)

        d = _run(flow).to_dict()
        assert d["state"] == "in_danger_zone"
        assert d["events"][0]["event"] == "zone_entry"
        assert d["events"][0]["alert"]["message"].startswith("Entered danger zone: Old quarry")
        assert d["events"][0]["dispatch"]["sent"] == 3

    @pytest.mark.parametrize("lat,lon,accuracy", [
        (91.0, 77.0, None),
        (28.6, 181.0, None),
        (28.6, 77.2, -1.0),
    ])
    def test_invalid_ping_rejected(self, lat, lon, accuracy):
        async def flow(engine, channels):
            await engine.orchestrator.report_location("U1", lat, lon, accuracy_m=accuracy)

        with pytest.raises(ValidationError):
            _run(flow)


# ═══════════════════════════════════════════════════════════════════════════
# Manual alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestManualAlert:

    def test_sos_is_critical_and_notified(self):
        async def flow(engine, channels):
            return await engine.orchestrator.trigger_manual_alert(
                "U1", HOTEL.latitude, HOTEL.longitude
            )

        result = _run(flow)
        assert result.alert.alert_type == AlertType.SOS
        assert result.alert.severity == AlertSeverity.CRITICAL
        assert result.alert.status == AlertStatus.NOTIFIED
        assert result.alert.message == "Emergency button pressed"
        assert result.alert.metadata["source"] == "manual"
        assert result.report.sent == 3
        assert result.dispatch_error is None

    def test_duplicate_sos_rejected_but_panic_allowed(self):
        async def flow(engine, channels):
            first = await engine.orchestrator.trigger_manual_alert("U1", 28.6, 77.2)
            with pytest.raises(DuplicateAlertError) as exc_info:
                await engine.orchestrator.trigger_manual_alert("U1", 28.6, 77.2)
            panic = await engine.orchestrator.trigger_manual_alert(
                "U1", 28.6, 77.2, alert_type=AlertType.PANIC, message="Being followed"
            )
            return first, exc_info.value, panic

        first, dup, panic = _run(flow)
        assert dup.existing_alert_id == first.alert.alert_id
        assert panic.alert.alert_type == AlertType.PANIC
        assert panic.alert.message == "Being followed"

    def test_detected_types_cannot_be_raised_by_hand(self):
        async def flow(engine, channels):
            await engine.orchestrator.trigger_manual_alert(
                "U1", 28.6, 77.2, alert_type=AlertType.ZONE_ENTRY
            )

        with pytest.raises(ValidationError):
            _run(flow)

    def test_unknown_user_notifies_emergency_services_only(self):
        async def flow(engine, channels):
            result = await engine.orchestrator.trigger_manual_alert("ghost", 28.6, 77.2)
            return result, channels

        result, channels = _run(flow)
        assert result.alert.status == AlertStatus.NOTIFIED
        assert [a.channel for a in result.report.attempts] == [NotificationChannel.WEBHOOK]
        assert channels[NotificationChannel.SMS].sent == []


# ═══════════════════════════════════════════════════════════════════════════
# Retry and operator lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_failed_dispatch_then_retry(self):
        async def flow(engine, channels):
            result = await engine.orchestrator.trigger_manual_alert("U1", 28.6, 77.2)
            failed = await engine.orchestrator.get_alert(result.alert.alert_id)
            for channel in channels.values():
                channel.fail = False
            report = await engine.orchestrator.retry_dispatch(result.alert.alert_id)
            attempts = await engine.orchestrator.list_attempts(result.alert.alert_id)
            return result, failed, report, attempts

        result, failed, report, attempts = _run(flow, fail=True)
        assert result.report.final_status == AlertStatus.NOTIFICATION_FAILED
        assert failed.status == AlertStatus.NOTIFICATION_FAILED
        assert report.final_status == AlertStatus.NOTIFIED
        assert report.sent == 3
        assert {a.attempt_count for a in attempts} == {2}

    def test_retry_requires_failed_alert(self):
        async def flow(engine, channels):
            result = await engine.orchestrator.trigger_manual_alert("U1", 28.6, 77.2)
            await engine.orchestrator.retry_dispatch(result.alert.alert_id)

        with pytest.raises(InvalidTransitionError):
            _run(flow)

    def test_acknowledge_then_resolve(self):
        async def flow(engine, channels):
            result = await engine.orchestrator.trigger_manual_alert("U1", 28.6, 77.2)
            alert_id = result.alert.alert_id
            acked = await engine.orchestrator.acknowledge_alert(alert_id, "operator-7")
            resolved = await engine.orchestrator.resolve_alert(alert_id, "operator-7", "Found safe")
            listed = await engine.orchestrator.list_alerts(status=AlertStatus.RESOLVED)
            return acked, resolved, listed

        acked, resolved, listed = _run(flow)
        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert acked.acknowledged_by == "operator-7"
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolution_note == "Found safe"
        assert [a.alert_id for a in listed] == [resolved.alert_id]

    def test_attempts_of_unknown_alert(self):
        async def flow(engine, channels):
            await engine.orchestrator.list_attempts("ALR-MISSING")

        with pytest.raises(NotFoundError):
            _run(flow)


# ═══════════════════════════════════════════════════════════════════════════
# Sweeps
# ═══════════════════════════════════════════════════════════════════════════

class TestSweep:

    def test_sweep_opens_inactivity_alert_once(self):
        backend = _make_backend()
        backend.add_location("U1", {
            "latitude": HOTEL.latitude,
            "longitude": HOTEL.longitude,
            "timestamp": NOW - timedelta(hours=1),
        })

        async def flow(engine, channels):
            first = await engine.orchestrator.run_sweep()
            second = await engine.orchestrator.run_sweep()
            alerts = await engine.orchestrator.list_alerts(user_id="U1")
            return first, second, alerts

        first, second, alerts = _run(flow, backend)
        assert first.alerts_created == 1
        assert second.events_emitted == 1
        assert second.alerts_created == 0
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.INACTIVITY
        assert alerts[0].message == "No activity detected for 60 minutes"
        assert alerts[0].status == AlertStatus.NOTIFIED

    def test_scheduler_drives_orchestrator_sweep(self):
        backend = _make_backend()
        backend.add_location("U1", {
            "latitude": QUARRY.latitude,
            "longitude": QUARRY.longitude,
            "timestamp": NOW,
        })

        async def flow(engine, channels):
            summary = await engine.scheduler.run_once()
            return summary, engine.scheduler.status()

        summary, status = _run(flow, backend)
        assert summary.alerts_created == 1
        assert status["sweeps_run"] == 1
        assert status["last_sweep"]["states"]["in_danger_zone"] == 1


# ═══════════════════════════════════════════════════════════════════════════
# Storage outages during dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestStorageOutage:

    def test_unsaved_attempt_rows_are_reported(self):
        backend = _make_backend(_FaultyBackend())
        backend.attempts_down = True

        async def flow(engine, channels):
            report = await engine.orchestrator.report_location("U1", QUARRY.latitude, QUARRY.longitude)
            return report.outcomes[0]

        outcome = _run(flow, backend)
        assert outcome.dispatch_error is None
        assert outcome.report.sent == 3
        assert outcome.report.persist_errors == 3
        assert outcome.alert.status == AlertStatus.NOTIFIED

    def test_unsettled_dispatch_is_reported_then_settled_by_sweep(self):
        backend = _make_backend(_FaultyBackend())
        backend.failing_statuses = {"notified", "notification_failed"}
        clock = _Clock()

        async def flow(engine, channels):
            orch = engine.orchestrator
            first = await orch.report_location("U1", QUARRY.latitude, QUARRY.longitude)
            outcome = first.outcomes[0]
            stuck = await orch.get_alert(outcome.alert.alert_id)
            repeat = await orch.report_location("U1", QUARRY.latitude, QUARRY.longitude)

            backend.failing_statuses = set()
            clock.now = NOW + timedelta(minutes=5)
            summary = await orch.run_sweep()
            settled = await orch.get_alert(outcome.alert.alert_id)
            acked = await orch.acknowledge_alert(outcome.alert.alert_id, "operator-7")
            return outcome, stuck, repeat, summary, settled, acked

        outcome, stuck, repeat, summary, settled, acked = _run(flow, backend, clock=clock)
        assert outcome.created is True
        assert outcome.report is None
        assert "Storage unavailable" in outcome.dispatch_error
        assert outcome.to_dict()["dispatch_error"] == outcome.dispatch_error
        assert stuck.status == AlertStatus.NOTIFYING
        assert repeat.outcomes[0].created is False

        assert summary.dispatches_settled == 1
        assert summary.alerts_created == 0
        assert summary.errors == 0
        assert settled.status == AlertStatus.NOTIFIED
        assert acked.status == AlertStatus.ACKNOWLEDGED

    def test_sweep_still_scans_when_stalled_lookup_fails(self):
        backend = _make_backend(_FaultyBackend())
        backend.listing_down = True
        backend.add_location("U1", {
            "latitude": HOTEL.latitude,
            "longitude": HOTEL.longitude,
            "timestamp": NOW - timedelta(hours=1),
        })

        async def flow(engine, channels):
            return await engine.orchestrator.run_sweep()

        summary = _run(flow, backend)
        assert summary.errors == 1
        assert summary.dispatches_settled == 0
        assert summary.alerts_created == 1
