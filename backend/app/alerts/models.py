"""
models.py - Shared data structures for the emergency alert engine.

Defines:
    • AlertType / AlertSeverity / AlertStatus - alert classification & lifecycle
    • NotificationChannel / AttemptOutcome    - delivery bookkeeping
    • ZoneKind / SafetyEventKind / UserSafetyState
    • LocationFix, EmergencyContact, User, Zone, SafetyEvent
    • Alert, NotificationAttempt, Recipient, DeliveryResult, DispatchReport

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    CREATED ──► NOTIFYING ──► NOTIFIED ─────────────► ACKNOWLEDGED ──► RESOLVED
                   ▲     └──► NOTIFICATION_FAILED ──┘        ▲            ▲
                   └────────────────┘ (retry)  └──────────────┼────────────┘
                                                              (manual override)

Open statuses: CREATED, NOTIFYING, NOTIFIED, NOTIFICATION_FAILED.
At most one alert per (user_id, alert_type) may be open at a time.
RESOLVED is terminal; alerts are never deleted.

═══════════════════════════════════════════════════════════════════════════
CANONICAL RECORD SHAPE
═══════════════════════════════════════════════════════════════════════════

Every storage backend's results are normalised into snake_case dicts
(see storage.operations.normalize). ``to_record`` / ``from_record`` convert between
those dicts and the dataclasses below. Enum members are stored by value;
severity is stored by lower-case name.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from backend.app.spatial.geo_index import GeoPoint


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    ZONE_ENTRY = "zone_entry"
    INACTIVITY = "inactivity"
    SOS        = "sos"
    PANIC      = "panic"


class AlertSeverity(IntEnum):
    """Integer ordering enables ``severity >= AlertSeverity.HIGH``."""
    LOW      = 1
    MEDIUM   = 2
    HIGH     = 3
    CRITICAL = 4


class AlertStatus(str, Enum):
    CREATED             = "created"
    NOTIFYING           = "notifying"
    NOTIFIED            = "notified"
    NOTIFICATION_FAILED = "notification_failed"
    ACKNOWLEDGED        = "acknowledged"
    RESOLVED            = "resolved"


class NotificationChannel(str, Enum):
    SMS     = "sms"
    EMAIL   = "email"
    WEBHOOK = "webhook"
    PUSH    = "push"


class AttemptOutcome(str, Enum):
    SENT                   = "sent"
    FAILED                 = "failed"
    SKIPPED_NOT_CONFIGURED = "skipped_not_configured"


class ZoneKind(str, Enum):
    SAFE   = "safe"
    DANGER = "danger"


class SafetyEventKind(str, Enum):
    ZONE_ENTRY = "zone_entry"
    INACTIVITY = "inactivity"


class UserSafetyState(str, Enum):
    """Per-user scanner state; recomputed every evaluation, never stored."""
    ACTIVE         = "active"
    STALE          = "stale"
    IN_DANGER_ZONE = "in_danger_zone"


class RecipientRole(str, Enum):
    SELF              = "self"
    CONTACT           = "contact"
    EMERGENCY_SERVICES = "emergency_services"


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle rules
# ═══════════════════════════════════════════════════════════════════════════

OPEN_STATUSES: FrozenSet[AlertStatus] = frozenset({
    AlertStatus.CREATED,
    AlertStatus.NOTIFYING,
    AlertStatus.NOTIFIED,
    AlertStatus.NOTIFICATION_FAILED,
})

ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.CREATED: frozenset({AlertStatus.NOTIFYING}),
    AlertStatus.NOTIFYING: frozenset({
        AlertStatus.NOTIFIED,
        AlertStatus.NOTIFICATION_FAILED,
    }),
    AlertStatus.NOTIFIED: frozenset({AlertStatus.ACKNOWLEDGED}),
    AlertStatus.NOTIFICATION_FAILED: frozenset({
        AlertStatus.NOTIFYING,
        AlertStatus.ACKNOWLEDGED,
        AlertStatus.RESOLVED,
    }),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


def sources_for(target: AlertStatus) -> List[AlertStatus]:
    """Statuses from which ``target`` may be reached, in declaration order."""
    return [s for s in AlertStatus if target in ALLOWED_TRANSITIONS[s]]


# Which alert type each detected condition opens
EVENT_ALERT_TYPES: Dict[SafetyEventKind, AlertType] = {
    SafetyEventKind.ZONE_ENTRY: AlertType.ZONE_ENTRY,
    SafetyEventKind.INACTIVITY: AlertType.INACTIVITY,
}

DEFAULT_SEVERITY: Dict[AlertType, AlertSeverity] = {
    AlertType.ZONE_ENTRY: AlertSeverity.HIGH,
    AlertType.INACTIVITY: AlertSeverity.HIGH,
    AlertType.SOS:        AlertSeverity.CRITICAL,
    AlertType.PANIC:      AlertSeverity.CRITICAL,
}


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO-8601 strings (with ``Z``) or epoch millis."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_severity(value: Any) -> AlertSeverity:
    if isinstance(value, AlertSeverity):
        return value
    if isinstance(value, int):
        return AlertSeverity(value)
    return AlertSeverity[str(value).upper()]


def _parse_enum(enum_cls, value: Any):
    if isinstance(value, enum_cls):
        return value
    return enum_cls(str(value).lower())


# ═══════════════════════════════════════════════════════════════════════════
# Location / user / zone
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LocationFix:
    """One location ping: position, accuracy (metres) and device timestamp."""
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy_m: Optional[float] = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_m": self.accuracy_m,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "LocationFix":
        """Raises ValueError for a missing timestamp or an out-of-range coordinate."""
        point = GeoPoint(float(record["latitude"]), float(record["longitude"]))
        timestamp = parse_timestamp(record["timestamp"])
        if timestamp is None:
            raise ValueError("location record has no timestamp")
        return cls(
            latitude=point.latitude,
            longitude=point.longitude,
            timestamp=timestamp,
            accuracy_m=(
                float(record["accuracy_m"])
                if record.get("accuracy_m") is not None else None
            ),
        )


@dataclass(frozen=True)
class EmergencyContact:
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    relationship: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "EmergencyContact":
        return cls(
            name=record.get("name") or "",
            phone=record.get("phone") or None,
            email=record.get("email") or None,
            relationship=record.get("relationship") or None,
        )


@dataclass
class User:
    """
    A tracked tourist, as read from the account subsystem.

    The core never writes users; location pings are stored separately.
    """
    user_id: str
    name: str = ""
    is_active: bool = True
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    emergency_contacts: List[EmergencyContact] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "User":
        return cls(
            user_id=str(record["user_id"]),
            name=record.get("name") or "",
            is_active=bool(record.get("is_active", True)),
            phone=record.get("phone") or None,
            email=record.get("email") or None,
            push_token=record.get("push_token") or None,
            emergency_contacts=[
                EmergencyContact.from_record(c)
                for c in (record.get("emergency_contacts") or [])
            ],
        )


@dataclass(frozen=True)
class Zone:
    """A circular geofence. Immutable for the duration of a sweep."""
    zone_id: str
    name: str
    center: GeoPoint
    radius_m: float
    kind: ZoneKind = ZoneKind.SAFE
    risk_factors: Tuple[str, ...] = ()
    recommendation: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Zone":
        return cls(
            zone_id=str(record["zone_id"]),
            name=record.get("name") or "",
            center=GeoPoint(float(record["latitude"]), float(record["longitude"])),
            radius_m=float(record["radius_m"]),
            kind=_parse_enum(ZoneKind, record.get("kind", ZoneKind.SAFE.value)),
            risk_factors=tuple(record.get("risk_factors") or ()),
            recommendation=record.get("recommendation") or "",
        )


@dataclass(frozen=True)
class ZoneSnapshot:
    """The zone set one sweep (or ping check) evaluates against."""
    zones: Tuple[Zone, ...]
    loaded_at: datetime

    @property
    def danger_zones(self) -> Tuple[Zone, ...]:
        return tuple(z for z in self.zones if z.kind == ZoneKind.DANGER)

    def __len__(self) -> int:
        return len(self.zones)


@dataclass(frozen=True)
class SafetyEvent:
    """A detection result; consumed immediately, never persisted."""
    user_id: str
    kind: SafetyEventKind
    detected_at: datetime
    location: LocationFix
    zone_id: Optional[str] = None
    zone_name: Optional[str] = None
    recommendation: str = ""
    distance_m: Optional[float] = None

    @property
    def alert_type(self) -> AlertType:
        return EVENT_ALERT_TYPES[self.kind]


# ═══════════════════════════════════════════════════════════════════════════
# Alerts & notification attempts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Alert:
    """A persisted emergency condition."""
    user_id: str
    alert_type: AlertType
    location: LocationFix
    message: str = ""
    severity: AlertSeverity = AlertSeverity.HIGH
    status: AlertStatus = AlertStatus.CREATED
    alert_id: str = field(default_factory=_generate_id)
    zone_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_record(self) -> Dict[str, Any]:
        """Flat canonical record, as handed to storage backends."""
        return {
            "alert_id": self.alert_id,
            "user_id": self.user_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.name.lower(),
            "status": self.status.value,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "accuracy_m": self.location.accuracy_m,
            "location_timestamp": self.location.timestamp,
            "message": self.message,
            "zone_id": self.zone_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "acknowledged_at": self.acknowledged_at,
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Alert":
        created = parse_timestamp(record.get("created_at")) or _now()
        return cls(
            alert_id=str(record["alert_id"]),
            user_id=str(record["user_id"]),
            alert_type=_parse_enum(AlertType, record["alert_type"]),
            severity=_parse_severity(record.get("severity", "high")),
            status=_parse_enum(AlertStatus, record["status"]),
            location=LocationFix(
                latitude=float(record["latitude"]),
                longitude=float(record["longitude"]),
                timestamp=parse_timestamp(record.get("location_timestamp")) or created,
                accuracy_m=record.get("accuracy_m"),
            ),
            message=record.get("message") or "",
            zone_id=record.get("zone_id"),
            created_at=created,
            updated_at=parse_timestamp(record.get("updated_at")) or created,
            acknowledged_at=parse_timestamp(record.get("acknowledged_at")),
            acknowledged_by=record.get("acknowledged_by"),
            resolved_at=parse_timestamp(record.get("resolved_at")),
            resolved_by=record.get("resolved_by"),
            resolution_note=record.get("resolution_note"),
            metadata=dict(record.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "user_id": self.user_id,
            "type": self.alert_type.value,
            "severity": self.severity.name,
            "status": self.status.value,
            "location": self.location.to_dict(),
            "message": self.message,
            "zone_id": self.zone_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "metadata": self.metadata,
        }


@dataclass
class NotificationAttempt:
    """Audit row for one (alert, channel, recipient) pair."""
    alert_id: str
    channel: NotificationChannel
    recipient: str
    outcome: AttemptOutcome
    attempted_at: datetime = field(default_factory=_now)
    error: Optional[str] = None
    recipient_role: RecipientRole = RecipientRole.SELF
    attempt_count: int = 1

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.alert_id, self.channel.value, self.recipient)

    def to_record(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "channel": self.channel.value,
            "recipient": self.recipient,
            "outcome": self.outcome.value,
            "attempted_at": self.attempted_at,
            "error": self.error,
            "recipient_role": self.recipient_role.value,
            "attempt_count": self.attempt_count,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "NotificationAttempt":
        return cls(
            alert_id=str(record["alert_id"]),
            channel=_parse_enum(NotificationChannel, record["channel"]),
            recipient=str(record["recipient"]),
            outcome=_parse_enum(AttemptOutcome, record["outcome"]),
            attempted_at=parse_timestamp(record.get("attempted_at")) or _now(),
            error=record.get("error"),
            recipient_role=_parse_enum(
                RecipientRole, record.get("recipient_role") or RecipientRole.SELF.value
            ),
            attempt_count=int(record.get("attempt_count") or 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "channel": self.channel.value,
            "recipient": self.recipient,
            "recipient_role": self.recipient_role.value,
            "outcome": self.outcome.value,
            "attempted_at": _iso(self.attempted_at),
            "attempt_count": self.attempt_count,
            "error": self.error,
        }


@dataclass(frozen=True)
class Recipient:
    """
    A person (or service) to notify about an alert.

    Attributes
    ----------
    name : str
        Display name used in message greetings.
    role : RecipientRole
        SELF gets a confirmation; CONTACT gets a "needs help" message.
    phone, email, push_token : str | None
        Contact fields; a channel is only planned when its field is set.
    """
    name: str
    role: RecipientRole
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    relationship: Optional[str] = None


@dataclass
class DeliveryResult:
    """Outcome of one channel send, before it becomes an audit row."""
    success: bool
    error: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class DispatchReport:
    """Summary of one ``dispatch`` call."""
    alert_id: str
    final_status: AlertStatus
    attempts: List[NotificationAttempt] = field(default_factory=list)
    already_sent: int = 0
    persist_errors: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def _count(self, outcome: AttemptOutcome) -> int:
        return sum(1 for a in self.attempts if a.outcome == outcome)

    @property
    def sent(self) -> int:
        return self._count(AttemptOutcome.SENT)

    @property
    def failed(self) -> int:
        return self._count(AttemptOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(AttemptOutcome.SKIPPED_NOT_CONFIGURED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "final_status": self.final_status.value,
            "attempted": len(self.attempts),
            "sent": self.sent,
            "failed": self.failed,
            "skipped_not_configured": self.skipped,
            "already_sent": self.already_sent,
            "persist_errors": self.persist_errors,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "attempts": [a.to_dict() for a in self.attempts],
        }
