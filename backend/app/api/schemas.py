"""
Pydantic schemas for the alert engine API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ManualAlertType(str, Enum):
    """Alert types a user can raise by hand."""
    SOS   = "sos"
    PANIC = "panic"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationPing(BaseModel):
    """One location report from the mobile app."""
    user_id: str = Field(..., min_length=1, examples=["tourist-042"])
    latitude: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[28.6129],
    )
    longitude: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[77.2295],
    )
    accuracy: Optional[float] = Field(
        None, ge=0.0,
        description="Horizontal accuracy in metres",
        examples=[12.5],
    )
    timestamp: Optional[datetime] = Field(
        None,
        description="Device time of the fix (defaults to server time)",
    )

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ManualAlertRequest(BaseModel):
    """SOS / panic button press."""
    user_id: str = Field(..., min_length=1, examples=["tourist-042"])
    latitude: float = Field(..., ge=-90.0, le=90.0, examples=[28.6129])
    longitude: float = Field(..., ge=-180.0, le=180.0, examples=[77.2295])
    alert_type: ManualAlertType = Field(default=ManualAlertType.SOS)
    message: str = Field(default="", max_length=500)


class AcknowledgeRequest(BaseModel):
    actor_id: Optional[str] = Field(None, min_length=1, examples=["operator-7"])


class ResolveRequest(BaseModel):
    actor_id: Optional[str] = Field(None, min_length=1, examples=["operator-7"])
    resolution_note: Optional[str] = Field(
        None, max_length=2000,
        examples=["Tourist reached the hotel safely"],
    )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class AlertListResponse(BaseModel):
    count: int
    alerts: List[Dict[str, Any]]


class AttemptListResponse(BaseModel):
    alert_id: str
    count: int
    attempts: List[Dict[str, Any]]
