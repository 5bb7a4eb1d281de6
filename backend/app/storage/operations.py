"""
operations.py - Backend-neutral storage operation descriptors.

A ``StorageOp`` names one unit of persistence work plus its parameters.
Every backend (REST primary, SQL secondary, in-memory) knows how to
execute every operation, so the router can replay the same descriptor
against the secondary when the primary fails.

═══════════════════════════════════════════════════════════════════════════
OPERATIONS
═══════════════════════════════════════════════════════════════════════════

    name                          result
    ────────────────────────────  ───────────────────────────────────────
    users.list_active             [user]
    users.get                     user | None
    locations.latest              location | None
    locations.append        (w)   location
    zones.list                    [zone]
    alerts.insert_if_absent (w)   {"created": bool, "alert": alert}
    alerts.get                    alert | None
    alerts.find_open              alert | None
    alerts.list                   [alert]   (newest first)
    alerts.compare_and_set  (w)   {"updated": bool, "alert": alert | None}
    attempts.upsert         (w)   {"written": bool, "attempt": attempt}
    attempts.list                 [attempt]

Conditional writes (insert_if_absent, compare_and_set, upsert) must be
atomic on the backend: they are how concurrent sweeps, pings and
dispatches avoid duplicate alerts and duplicate sends.

Results come back in whatever key style the backend speaks; the router
passes them through ``normalize`` to get canonical snake_case records
with parsed timestamps.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from backend.app.alerts.models import parse_timestamp


@dataclass(frozen=True)
class StorageOp:
    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    is_write: bool = False

    def __str__(self) -> str:
        return self.name


# ═══════════════════════════════════════════════════════════════════════════
# Constructors
# ═══════════════════════════════════════════════════════════════════════════

def list_active_users() -> StorageOp:
    return StorageOp("users.list_active")


def get_user(user_id: str) -> StorageOp:
    return StorageOp("users.get", {"user_id": user_id})


def latest_location(user_id: str) -> StorageOp:
    return StorageOp("locations.latest", {"user_id": user_id})


def append_location(user_id: str, location: Mapping[str, Any]) -> StorageOp:
    return StorageOp(
        "locations.append",
        {"user_id": user_id, "location": dict(location)},
        is_write=True,
    )


def list_zones(kind: Optional[str] = None) -> StorageOp:
    return StorageOp("zones.list", {"kind": kind})


def insert_alert_if_absent(alert: Mapping[str, Any]) -> StorageOp:
    """Insert ``alert`` unless (user_id, alert_type) already has an open alert."""
    return StorageOp("alerts.insert_if_absent", {"alert": dict(alert)}, is_write=True)


def get_alert(alert_id: str) -> StorageOp:
    return StorageOp("alerts.get", {"alert_id": alert_id})


def find_open_alert(user_id: str, alert_type: str) -> StorageOp:
    return StorageOp("alerts.find_open", {"user_id": user_id, "alert_type": alert_type})


def list_alerts(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 100,
) -> StorageOp:
    return StorageOp(
        "alerts.list", {"status": status, "user_id": user_id, "limit": limit}
    )


def compare_and_set_status(
    alert_id: str,
    expected: Iterable[str],
    status: str,
    fields: Optional[Mapping[str, Any]] = None,
) -> StorageOp:
    """
    Set ``status`` (and ``fields``) only if the alert's current status is
    one of ``expected``. ``updated_at`` travels inside ``fields``.
    """
    return StorageOp(
        "alerts.compare_and_set",
        {
            "alert_id": alert_id,
            "expected": list(expected),
            "status": status,
            "fields": dict(fields or {}),
        },
        is_write=True,
    )


def upsert_attempt(attempt: Mapping[str, Any]) -> StorageOp:
    """
    Write the (alert, channel, recipient) row unless it is already SENT.

    A rewritten row has its ``attempt_count`` incremented.
    """
    return StorageOp("attempts.upsert", {"attempt": dict(attempt)}, is_write=True)


def list_attempts(alert_id: str) -> StorageOp:
    return StorageOp("attempts.list", {"alert_id": alert_id})


# ═══════════════════════════════════════════════════════════════════════════
# Canonical shape
# ═══════════════════════════════════════════════════════════════════════════

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

TIMESTAMP_KEYS = frozenset({
    "timestamp", "location_timestamp", "created_at", "updated_at",
    "acknowledged_at", "resolved_at", "attempted_at",
})

# Free-form payloads whose keys are left untouched
_OPAQUE_KEYS = frozenset({"metadata"})


def to_snake(key: str) -> str:
    """``alertId`` → ``alert_id``; snake_case keys pass through."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def to_camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def normalize(value: Any) -> Any:
    """Recursively convert keys to snake_case and parse timestamp fields."""
    if isinstance(value, list):
        return [normalize(v) for v in value]
    if not isinstance(value, Mapping):
        return value

    out: Dict[str, Any] = {}
    for raw_key, raw in value.items():
        key = to_snake(str(raw_key))
        if key in _OPAQUE_KEYS:
            out[key] = dict(raw or {})
        elif key in TIMESTAMP_KEYS:
            out[key] = parse_timestamp(raw)
        else:
            out[key] = normalize(raw)
    return out


def encode(value: Any, *, camel: bool = False) -> Any:
    """JSON-ready copy: datetimes as ISO strings, optionally camelCase keys."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [encode(v, camel=camel) for v in value]
    if isinstance(value, Mapping):
        out: Dict[str, Any] = {}
        for key, raw in value.items():
            name = to_camel(key) if camel else key
            out[name] = raw if key in _OPAQUE_KEYS else encode(raw, camel=camel)
        return out
    return value
