"""
memory_backend.py - In-process storage with the same conditional semantics
as the real backends.

Used for ``STORAGE_MODE=memory`` (local development) and as the backing
store in tests. One ``asyncio.Lock`` serialises every operation, which
makes insert-if-absent, compare-and-set and the attempt upsert atomic.

Records are held in canonical snake_case form and copied on the way in
and out, so callers can never mutate stored state by accident.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from backend.app.alerts.models import AttemptOutcome, OPEN_STATUSES
from backend.app.storage.backend import StorageBackend


_OPEN_VALUES = frozenset(s.value for s in OPEN_STATUSES)


def _epoch() -> datetime:
    return datetime.min.replace(tzinfo=timezone.utc)


class MemoryBackend(StorageBackend):
    """Dict-backed store; see module docstring."""

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._lock = asyncio.Lock()
        self._users: Dict[str, Dict[str, Any]] = {}
        self._locations: Dict[str, List[Dict[str, Any]]] = {}
        self._zones: Dict[str, Dict[str, Any]] = {}
        self._alerts: Dict[str, Dict[str, Any]] = {}
        self._attempts: Dict[Tuple[str, str, str], Dict[str, Any]] = {}

    # ── Seeding (dev fixtures & tests) ──

    def add_user(self, record: Mapping[str, Any]) -> None:
        self._users[str(record["user_id"])] = copy.deepcopy(dict(record))

    def add_zone(self, record: Mapping[str, Any]) -> None:
        self._zones[str(record["zone_id"])] = copy.deepcopy(dict(record))

    def add_location(self, user_id: str, record: Mapping[str, Any]) -> None:
        self._locations.setdefault(user_id, []).append(
            {"user_id": user_id, **copy.deepcopy(dict(record))}
        )

    @property
    def alert_count(self) -> int:
        return len(self._alerts)

    # ── Users & locations ──

    async def _users_list_active(self) -> List[Dict[str, Any]]:
        async with self._lock:
            return [
                copy.deepcopy(u) for u in self._users.values()
                if u.get("is_active", True)
            ]

    async def _users_get(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            user = self._users.get(user_id)
            return copy.deepcopy(user) if user else None

    async def _locations_latest(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            history = self._locations.get(user_id)
            if not history:
                return None
            latest = max(history, key=lambda r: r.get("timestamp") or _epoch())
            return copy.deepcopy(latest)

    async def _locations_append(
        self, user_id: str, location: Mapping[str, Any]
    ) -> Dict[str, Any]:
        record = {"user_id": user_id, **copy.deepcopy(dict(location))}
        async with self._lock:
            self._locations.setdefault(user_id, []).append(record)
        return copy.deepcopy(record)

    # ── Zones ──

    async def _zones_list(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            return [
                copy.deepcopy(z) for z in self._zones.values()
                if kind is None or z.get("kind") == kind
            ]

    # ── Alerts ──

    def _open_alert(self, user_id: str, alert_type: str) -> Optional[Dict[str, Any]]:
        for alert in self._alerts.values():
            if (
                alert["user_id"] == user_id
                and alert["alert_type"] == alert_type
                and alert["status"] in _OPEN_VALUES
            ):
                return alert
        return None

    async def _alerts_insert_if_absent(self, alert: Mapping[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            existing = self._open_alert(alert["user_id"], alert["alert_type"])
            if existing is not None:
                return {"created": False, "alert": copy.deepcopy(existing)}
            record = copy.deepcopy(dict(alert))
            self._alerts[record["alert_id"]] = record
            return {"created": True, "alert": copy.deepcopy(record)}

    async def _alerts_get(self, alert_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            return copy.deepcopy(alert) if alert else None

    async def _alerts_find_open(self, user_id: str, alert_type: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            alert = self._open_alert(user_id, alert_type)
            return copy.deepcopy(alert) if alert else None

    async def _alerts_list(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [
                a for a in self._alerts.values()
                if (status is None or a["status"] == status)
                and (user_id is None or a["user_id"] == user_id)
            ]
            rows.sort(key=lambda a: a.get("created_at") or _epoch(), reverse=True)
            return copy.deepcopy(rows[:limit])

    async def _alerts_compare_and_set(
        self,
        alert_id: str,
        expected: Iterable[str],
        status: str,
        fields: Mapping[str, Any],
    ) -> Dict[str, Any]:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return {"updated": False, "alert": None}
            if alert["status"] not in set(expected):
                return {"updated": False, "alert": copy.deepcopy(alert)}
            alert.update(copy.deepcopy(dict(fields)))
            alert["status"] = status
            return {"updated": True, "alert": copy.deepcopy(alert)}

    # ── Notification attempts ──

    async def _attempts_upsert(self, attempt: Mapping[str, Any]) -> Dict[str, Any]:
        key = (attempt["alert_id"], attempt["channel"], attempt["recipient"])
        async with self._lock:
            existing = self._attempts.get(key)
            if existing is not None and existing["outcome"] == AttemptOutcome.SENT.value:
                return {"written": False, "attempt": copy.deepcopy(existing)}
            record = copy.deepcopy(dict(attempt))
            record["attempt_count"] = (existing["attempt_count"] + 1) if existing else 1
            self._attempts[key] = record
            return {"written": True, "attempt": copy.deepcopy(record)}

    async def _attempts_list(self, alert_id: str) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [a for k, a in self._attempts.items() if k[0] == alert_id]
            rows.sort(key=lambda a: (a.get("attempted_at") or _epoch(), a["channel"]))
            return copy.deepcopy(rows)
