"""
sql_backend.py - Secondary storage: replicated PostgreSQL via SQLAlchemy async.

Conditional writes map onto single SQL statements so they stay atomic
across orchestrator replicas:

    insert_if_absent   INSERT ... ON CONFLICT (user_id, alert_type)
                       WHERE status IN (open) DO NOTHING RETURNING *
    compare_and_set    UPDATE ... WHERE alert_id = :id AND status IN (:expected)
                       RETURNING *
    attempts.upsert    INSERT ... ON CONFLICT (alert_id, channel, recipient)
                       DO UPDATE ... WHERE outcome <> 'sent' RETURNING *

Driver and connection failures are raised as ``BackendUnavailableError``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backend.app.alerts.models import AttemptOutcome
from backend.app.core.database import close_db, create_session_factory, init_db
from backend.app.core.errors import BackendUnavailableError
from backend.app.storage.backend import StorageBackend
from backend.app.storage.operations import StorageOp
from backend.app.storage.tables import (
    OPEN_STATUS_VALUES,
    alerts,
    locations,
    notification_attempts,
    users,
    zones,
)

logger = logging.getLogger(__name__)


def _alert_values(record: Mapping[str, Any]) -> Dict[str, Any]:
    values = {k: v for k, v in record.items() if k in alerts.c and k != "alert_metadata"}
    if "metadata" in record:
        values["alert_metadata"] = dict(record["metadata"] or {})
    return values


def _alert_record(row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = dict(row)
    record["metadata"] = record.pop("alert_metadata", None) or {}
    return record


def _plain(row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class SqlBackend(StorageBackend):
    """
    Executes storage operations against the PostgreSQL replica.

    Parameters
    ----------
    engine : AsyncEngine
        Created by ``core.database.create_engine``; disposed by ``close``.
    """

    def __init__(self, engine: AsyncEngine, *, name: str = "secondary") -> None:
        self.name = name
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] = create_session_factory(engine)

    async def execute(self, op: StorageOp) -> Any:
        try:
            return await super().execute(op)
        except (SQLAlchemyError, OSError) as exc:
            raise BackendUnavailableError(self.name, f"{op.name}: {exc}") from exc

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Secondary store ping failed: %s", exc, extra={"backend": self.name})
            return False
        return True

    async def create_tables(self) -> None:
        await init_db(self._engine)

    async def close(self) -> None:
        await close_db(self._engine)

    # ── Users & locations ──

    async def _users_list_active(self) -> List[Dict[str, Any]]:
        async with self._sessions() as session:
            result = await session.execute(select(users).where(users.c.is_active.is_(True)))
            return [dict(r) for r in result.mappings()]

    async def _users_get(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessions() as session:
            result = await session.execute(select(users).where(users.c.user_id == user_id))
            return _plain(result.mappings().first())

    async def _locations_latest(self, user_id: str) -> Optional[Dict[str, Any]]:
        stmt = (
            select(locations)
            .where(locations.c.user_id == user_id)
            .order_by(locations.c.timestamp.desc())
            .limit(1)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return _plain(result.mappings().first())

    async def _locations_append(self, user_id: str, location: Mapping[str, Any]) -> Dict[str, Any]:
        values = {k: v for k, v in location.items() if k in locations.c and k != "id"}
        values["user_id"] = user_id
        async with self._sessions.begin() as session:
            result = await session.execute(
                pg_insert(locations).values(**values).returning(*locations.c)
            )
            return dict(result.mappings().one())

    # ── Zones ──

    async def _zones_list(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(zones).order_by(zones.c.zone_id)
        if kind is not None:
            stmt = stmt.where(zones.c.kind == kind)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [dict(r) for r in result.mappings()]

    # ── Alerts ──

    def _select_open(self, user_id: str, alert_type: str):
        return select(alerts).where(
            alerts.c.user_id == user_id,
            alerts.c.alert_type == alert_type,
            alerts.c.status.in_(OPEN_STATUS_VALUES),
        )

    async def _alerts_insert_if_absent(self, alert: Mapping[str, Any]) -> Dict[str, Any]:
        stmt = (
            pg_insert(alerts)
            .values(**_alert_values(alert))
            .on_conflict_do_nothing(
                index_elements=[alerts.c.user_id, alerts.c.alert_type],
                index_where=alerts.c.status.in_(OPEN_STATUS_VALUES),
            )
            .returning(*alerts.c)
        )
        async with self._sessions.begin() as session:
            inserted = (await session.execute(stmt)).mappings().first()
            if inserted is not None:
                return {"created": True, "alert": _alert_record(inserted)}
            existing = (
                await session.execute(self._select_open(alert["user_id"], alert["alert_type"]))
            ).mappings().first()

        if existing is None:
            # The conflicting alert closed between the two statements
            return await self._alerts_insert_if_absent(alert)
        return {"created": False, "alert": _alert_record(existing)}

    async def _alerts_get(self, alert_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessions() as session:
            result = await session.execute(select(alerts).where(alerts.c.alert_id == alert_id))
            return _alert_record(result.mappings().first())

    async def _alerts_find_open(self, user_id: str, alert_type: str) -> Optional[Dict[str, Any]]:
        async with self._sessions() as session:
            result = await session.execute(self._select_open(user_id, alert_type))
            return _alert_record(result.mappings().first())

    async def _alerts_list(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        stmt = select(alerts).order_by(alerts.c.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(alerts.c.status == status)
        if user_id is not None:
            stmt = stmt.where(alerts.c.user_id == user_id)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [_alert_record(r) for r in result.mappings()]

    async def _alerts_compare_and_set(
        self,
        alert_id: str,
        expected: Iterable[str],
        status: str,
        fields: Mapping[str, Any],
    ) -> Dict[str, Any]:
        values = _alert_values(fields)
        values["status"] = status
        stmt = (
            update(alerts)
            .where(alerts.c.alert_id == alert_id, alerts.c.status.in_(list(expected)))
            .values(**values)
            .returning(*alerts.c)
        )
        async with self._sessions.begin() as session:
            row = (await session.execute(stmt)).mappings().first()
            if row is not None:
                return {"updated": True, "alert": _alert_record(row)}
            current = (
                await session.execute(select(alerts).where(alerts.c.alert_id == alert_id))
            ).mappings().first()
        return {"updated": False, "alert": _alert_record(current)}

    # ── Notification attempts ──

    async def _attempts_upsert(self, attempt: Mapping[str, Any]) -> Dict[str, Any]:
        values = {k: v for k, v in attempt.items() if k in notification_attempts.c}
        values["attempt_count"] = 1
        insert = pg_insert(notification_attempts).values(**values)
        stmt = insert.on_conflict_do_update(
            index_elements=[
                notification_attempts.c.alert_id,
                notification_attempts.c.channel,
                notification_attempts.c.recipient,
            ],
            set_={
                "outcome": insert.excluded.outcome,
                "attempted_at": insert.excluded.attempted_at,
                "error": insert.excluded.error,
                "recipient_role": insert.excluded.recipient_role,
                "attempt_count": notification_attempts.c.attempt_count + 1,
            },
            where=notification_attempts.c.outcome != AttemptOutcome.SENT.value,
        ).returning(*notification_attempts.c)

        async with self._sessions.begin() as session:
            row = (await session.execute(stmt)).mappings().first()
            if row is not None:
                return {"written": True, "attempt": dict(row)}
            existing = (
                await session.execute(
                    select(notification_attempts).where(
                        notification_attempts.c.alert_id == attempt["alert_id"],
                        notification_attempts.c.channel == attempt["channel"],
                        notification_attempts.c.recipient == attempt["recipient"],
                    )
                )
            ).mappings().first()
        return {"written": False, "attempt": _plain(existing)}

    async def _attempts_list(self, alert_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(notification_attempts)
            .where(notification_attempts.c.alert_id == alert_id)
            .order_by(notification_attempts.c.attempted_at, notification_attempts.c.channel)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [dict(r) for r in result.mappings()]
