"""
tables.py - Relational layout of the secondary (PostgreSQL) store.

    users                   by user_id; contacts as JSON
    locations               append-only pings, index (user_id, timestamp)
    zones                   by zone_id, index on kind
    alerts                  by alert_id, index (user_id, alert_type, status),
                            partial UNIQUE (user_id, alert_type) WHERE open
    notification_attempts   PK (alert_id, channel, recipient)

The partial unique index is what makes ``INSERT ... ON CONFLICT DO NOTHING``
an atomic insert-if-no-open-alert.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.alerts.models import OPEN_STATUSES
from backend.app.core.database import Base

OPEN_STATUS_VALUES = sorted(s.value for s in OPEN_STATUSES)
_OPEN_PREDICATE = "status IN (%s)" % ", ".join(f"'{v}'" for v in OPEN_STATUS_VALUES)


class UserRow(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    email: Mapped[Optional[str]] = mapped_column(String(254))
    push_token: Mapped[Optional[str]] = mapped_column(Text)
    emergency_contacts: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)


class LocationRow(Base):
    __tablename__ = "locations"
    __table_args__ = (Index("ix_locations_user_time", "user_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64))
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    accuracy_m: Mapped[Optional[float]] = mapped_column(Float)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ZoneRow(Base):
    __tablename__ = "zones"

    zone_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    radius_m: Mapped[float] = mapped_column(Float)
    kind: Mapped[str] = mapped_column(String(16), index=True)
    risk_factors: Mapped[List[str]] = mapped_column(JSON, default=list)
    recommendation: Mapped[str] = mapped_column(Text, default="")


class AlertRow(Base):
    __tablename__ = "alerts"

    alert_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64))
    alert_type: Mapped[str] = mapped_column(String(32))
    severity: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(32))
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    accuracy_m: Mapped[Optional[float]] = mapped_column(Float)
    location_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    message: Mapped[str] = mapped_column(Text, default="")
    zone_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(64))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64))
    resolution_note: Mapped[Optional[str]] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    alert_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index("ix_alerts_user_type_status", "user_id", "alert_type", "status"),
        Index(
            "uq_alerts_open_per_user_type",
            "user_id",
            "alert_type",
            unique=True,
            postgresql_where=text(_OPEN_PREDICATE),
        ),
    )


class AttemptRow(Base):
    __tablename__ = "notification_attempts"

    alert_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("alerts.alert_id"), primary_key=True
    )
    channel: Mapped[str] = mapped_column(String(16), primary_key=True)
    recipient: Mapped[str] = mapped_column(String(512), primary_key=True)
    outcome: Mapped[str] = mapped_column(String(32))
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    error: Mapped[Optional[str]] = mapped_column(Text)
    recipient_role: Mapped[str] = mapped_column(String(32), default="self")
    attempt_count: Mapped[int] = mapped_column(Integer, default=1)


users = UserRow.__table__
locations = LocationRow.__table__
zones = ZoneRow.__table__
alerts = AlertRow.__table__
notification_attempts = AttemptRow.__table__
