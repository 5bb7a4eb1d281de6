"""
test_alert_store.py — Tests for alert creation and the status machine.

Covers:
    • At most one open alert per (user, type), including concurrent creation
    • Alert messages and metadata derived from safety events
    • Allowed / rejected transitions (CREATED … RESOLVED)
    • Acknowledge / resolve stamping and slot release
    • Queries and the attempt audit trail

Run with:
    pytest tests/test_alert_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.alerts.alert_store import AlertStore, event_message
from backend.app.alerts.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    AttemptOutcome,
    LocationFix,
    NotificationAttempt,
    NotificationChannel,
    RecipientRole,
    SafetyEvent,
    SafetyEventKind,
)
from backend.app.core.errors import (
    DuplicateAlertError,
    InvalidTransitionError,
    NotFoundError,
)
from backend.app.storage.memory_backend import MemoryBackend
from backend.app.storage.source_router import SourceRouter


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def _make_store() -> AlertStore:
    return AlertStore(SourceRouter(MemoryBackend()), clock=lambda: NOW)


def _make_fix(minutes_ago: float = 0.0) -> LocationFix:
    return LocationFix(
        latitude=28.6129,
        longitude=77.2295,
        timestamp=NOW - timedelta(minutes=minutes_ago),
        accuracy_m=10.0,
    )


def _make_event(
    user_id: str = "U1",
    kind: SafetyEventKind = SafetyEventKind.INACTIVITY,
    minutes_ago: float = 31.0,
) -> SafetyEvent:
    if kind == SafetyEventKind.ZONE_ENTRY:
        return SafetyEvent(
            user_id=user_id,
            kind=kind,
            detected_at=NOW,
            location=_make_fix(),
            zone_id="Z1",
            zone_name="Old quarry",
            recommendation="Leave the area via the north gate",
            distance_m=450.4,
        )
    return SafetyEvent(
        user_id=user_id,
        kind=kind,
        detected_at=NOW,
        location=_make_fix(minutes_ago),
    )


async def _notified(store: AlertStore, event: SafetyEvent):
    alert = (await store.create_if_absent(event)).alert
    await store.transition(alert.alert_id, AlertStatus.NOTIFYING)
    return await store.transition(alert.alert_id, AlertStatus.NOTIFIED)


async def _failed(store: AlertStore, event: SafetyEvent):
    alert = (await store.create_if_absent(event)).alert
    await store.transition(alert.alert_id, AlertStatus.NOTIFYING)
    return await store.transition(alert.alert_id, AlertStatus.NOTIFICATION_FAILED)


# ═══════════════════════════════════════════════════════════════════════════
# Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateIfAbsent:

    def test_new_alert_is_created(self):
        creation = asyncio.run(_make_store().create_if_absent(_make_event()))
        assert creation.created is True
        alert = creation.alert
        assert alert.status == AlertStatus.CREATED
        assert alert.alert_type == AlertType.INACTIVITY
        assert alert.severity == AlertSeverity.HIGH
        assert alert.alert_id.startswith("ALR-")
        assert alert.created_at == NOW

    def test_second_event_returns_existing_alert(self):
        async def run():
            store = _make_store()
            first = await store.create_if_absent(_make_event())
            second = await store.create_if_absent(_make_event(minutes_ago=45))
            return first, second

        first, second = asyncio.run(run())
        assert second.created is False
        assert second.alert.alert_id == first.alert.alert_id
        assert second.alert.message == first.alert.message

    def test_concurrent_creation_yields_one_alert(self):
        async def run():
            store = _make_store()
            results = await asyncio.gather(
                *(store.create_if_absent(_make_event()) for _ in range(20))
            )
            open_alerts = await store.list_alerts(user_id="U1")
            return results, open_alerts

        results, open_alerts = asyncio.run(run())
        assert sum(1 for r in results if r.created) == 1
        assert len({r.alert.alert_id for r in results}) == 1
        assert len(open_alerts) == 1

    def test_types_are_independent(self):
        async def run():
            store = _make_store()
            a = await store.create_if_absent(_make_event())
            b = await store.create_if_absent(_make_event(kind=SafetyEventKind.ZONE_ENTRY))
            return a, b

        a, b = asyncio.run(run())
        assert a.created and b.created
        assert a.alert.alert_id != b.alert.alert_id

    def test_users_are_independent(self):
        async def run():
            store = _make_store()
            await store.create_if_absent(_make_event("U1"))
            return await store.create_if_absent(_make_event("U2"))

        assert asyncio.run(run()).created is True

    def test_zone_alert_carries_zone_details(self):
        creation = asyncio.run(
            _make_store().create_if_absent(_make_event(kind=SafetyEventKind.ZONE_ENTRY))
        )
        alert = creation.alert
        assert alert.alert_type == AlertType.ZONE_ENTRY
        assert alert.zone_id == "Z1"
        assert alert.message == "Entered danger zone: Old quarry (450 m from centre)"
        assert alert.metadata["zone_name"] == "Old quarry"
        assert alert.metadata["recommendation"] == "Leave the area via the north gate"
        assert alert.metadata["event_kind"] == "zone_entry"

    def test_inactivity_metadata_records_last_activity(self):
        alert = asyncio.run(_make_store().create_if_absent(_make_event())).alert
        assert alert.metadata["last_activity"] == (NOW - timedelta(minutes=31)).isoformat()
        assert "zone_name" not in alert.metadata


class TestStrictCreate:

    def test_create_manual_alert(self):
        alert = asyncio.run(_make_store().create(
            "U1", AlertType.SOS, _make_fix(),
            message="Emergency button pressed",
            severity=AlertSeverity.CRITICAL,
            metadata={"source": "manual"},
        ))
        assert alert.status == AlertStatus.CREATED
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.metadata == {"source": "manual"}

    def test_default_message_and_severity(self):
        alert = asyncio.run(_make_store().create("U1", AlertType.PANIC, _make_fix()))
        assert alert.message == "PANIC triggered"
        assert alert.severity == AlertSeverity.CRITICAL

    def test_duplicate_raises(self):
        async def run():
            store = _make_store()
            first = await store.create("U1", AlertType.SOS, _make_fix())
            try:
                await store.create("U1", AlertType.SOS, _make_fix())
            except DuplicateAlertError as exc:
                return first, exc

        first, exc = asyncio.run(run())
        assert exc.existing_alert_id == first.alert_id
        assert exc.status_code == 409


class TestEventMessage:

    def test_zone_without_distance(self):
        event = SafetyEvent(
            user_id="U1", kind=SafetyEventKind.ZONE_ENTRY, detected_at=NOW,
            location=_make_fix(), zone_id="Z9",
        )
        assert event_message(event) == "Entered danger zone: Z9"

    def test_inactivity_minutes_rounded_down(self):
        assert event_message(_make_event(minutes_ago=31.9)) == "No activity detected for 31 minutes"


# ═══════════════════════════════════════════════════════════════════════════
# Transitions
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitions:

    def test_happy_path(self):
        async def run():
            store = _make_store()
            notified = await _notified(store, _make_event())
            acked = await store.acknowledge(notified.alert_id, "operator-7")
            resolved = await store.resolve(notified.alert_id, "operator-7", "Found safe")
            return notified, acked, resolved

        notified, acked, resolved = asyncio.run(run())
        assert notified.status == AlertStatus.NOTIFIED
        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert acked.acknowledged_by == "operator-7"
        assert acked.acknowledged_at == NOW
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolved_by == "operator-7"
        assert resolved.resolution_note == "Found safe"

    def test_cannot_skip_notifying(self):
        async def run():
            store = _make_store()
            alert = (await store.create_if_absent(_make_event())).alert
            await store.transition(alert.alert_id, AlertStatus.NOTIFIED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.current == "created"
        assert exc_info.value.requested == "notified"

    def test_second_notifying_is_rejected(self):
        async def run():
            store = _make_store()
            alert = (await store.create_if_absent(_make_event())).alert
            await store.transition(alert.alert_id, AlertStatus.NOTIFYING)
            await store.transition(alert.alert_id, AlertStatus.NOTIFYING)

        with pytest.raises(InvalidTransitionError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.current == "notifying"

    def test_failed_can_be_retried(self):
        async def run():
            store = _make_store()
            failed = await _failed(store, _make_event())
            return await store.transition(failed.alert_id, AlertStatus.NOTIFYING)

        assert asyncio.run(run()).status == AlertStatus.NOTIFYING

    def test_failed_can_be_resolved_directly(self):
        async def run():
            store = _make_store()
            failed = await _failed(store, _make_event())
            return await store.resolve(failed.alert_id, "operator-7")

        assert asyncio.run(run()).status == AlertStatus.RESOLVED

    def test_failed_can_be_acknowledged(self):
        async def run():
            store = _make_store()
            failed = await _failed(store, _make_event())
            return await store.acknowledge(failed.alert_id, "operator-7")

        assert asyncio.run(run()).status == AlertStatus.ACKNOWLEDGED

    @pytest.mark.parametrize("target", [AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED])
    def test_operator_statuses_need_their_own_calls(self, target):
        async def run():
            store = _make_store()
            notified = await _notified(store, _make_event())
            await store.transition(notified.alert_id, target)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(run())

    def test_cannot_acknowledge_before_dispatch(self):
        async def run():
            store = _make_store()
            alert = (await store.create_if_absent(_make_event())).alert
            await store.acknowledge(alert.alert_id, "operator-7")

        with pytest.raises(InvalidTransitionError):
            asyncio.run(run())

    def test_notified_cannot_be_resolved_without_ack(self):
        async def run():
            store = _make_store()
            notified = await _notified(store, _make_event())
            await store.resolve(notified.alert_id, "operator-7")

        with pytest.raises(InvalidTransitionError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.current == "notified"

    def test_resolved_is_terminal(self):
        async def run():
            store = _make_store()
            failed = await _failed(store, _make_event())
            await store.resolve(failed.alert_id, "operator-7")
            await store.transition(failed.alert_id, AlertStatus.NOTIFYING)

        with pytest.raises(InvalidTransitionError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.current == "resolved"

    def test_unknown_alert(self):
        with pytest.raises(NotFoundError):
            asyncio.run(_make_store().transition("ALR-MISSING", AlertStatus.NOTIFYING))

    def test_rejected_transition_leaves_alert_unchanged(self):
        async def run():
            store = _make_store()
            alert = (await store.create_if_absent(_make_event())).alert
            with pytest.raises(InvalidTransitionError):
                await store.transition(alert.alert_id, AlertStatus.NOTIFIED)
            return await store.get(alert.alert_id)

        assert asyncio.run(run()).status == AlertStatus.CREATED


class TestSlotRelease:

    def test_acknowledged_alert_frees_the_slot(self):
        async def run():
            store = _make_store()
            notified = await _notified(store, _make_event())
            await store.acknowledge(notified.alert_id, "operator-7")
            return notified, await store.create_if_absent(_make_event())

        old, creation = asyncio.run(run())
        assert creation.created is True
        assert creation.alert.alert_id != old.alert_id

    def test_failed_alert_still_holds_the_slot(self):
        async def run():
            store = _make_store()
            failed = await _failed(store, _make_event())
            return failed, await store.create_if_absent(_make_event())

        failed, creation = asyncio.run(run())
        assert creation.created is False
        assert creation.alert.alert_id == failed.alert_id
        assert creation.alert.status == AlertStatus.NOTIFICATION_FAILED


# ═══════════════════════════════════════════════════════════════════════════
# Queries & attempts
# ═══════════════════════════════════════════════════════════════════════════

class TestQueries:

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            asyncio.run(_make_store().get("ALR-MISSING"))

    def test_find_open(self):
        async def run():
            store = _make_store()
            created = (await store.create_if_absent(_make_event())).alert
            found = await store.find_open("U1", AlertType.INACTIVITY)
            missing = await store.find_open("U1", AlertType.SOS)
            return created, found, missing

        created, found, missing = asyncio.run(run())
        assert found.alert_id == created.alert_id
        assert missing is None

    def test_list_filters(self):
        async def run():
            store = _make_store()
            await _notified(store, _make_event("U1"))
            await store.create_if_absent(_make_event("U2"))
            return (
                await store.list_alerts(status=AlertStatus.NOTIFIED),
                await store.list_alerts(user_id="U2"),
                await store.list_alerts(limit=1),
            )

        notified, for_u2, limited = asyncio.run(run())
        assert [a.user_id for a in notified] == ["U1"]
        assert [a.user_id for a in for_u2] == ["U2"]
        assert len(limited) == 1

    def test_record_and_list_attempts(self):
        async def run():
            store = _make_store()
            alert = (await store.create_if_absent(_make_event())).alert
            stored = await store.record_attempt(NotificationAttempt(
                alert_id=alert.alert_id,
                channel=NotificationChannel.EMAIL,
                recipient="ravi@example.com",
                outcome=AttemptOutcome.SENT,
                attempted_at=NOW,
                recipient_role=RecipientRole.CONTACT,
            ))
            return stored, await store.list_attempts(alert.alert_id)

        stored, attempts = asyncio.run(run())
        assert stored.attempt_count == 1
        assert len(attempts) == 1
        assert attempts[0].recipient_role == RecipientRole.CONTACT
        assert attempts[0].outcome == AttemptOutcome.SENT
