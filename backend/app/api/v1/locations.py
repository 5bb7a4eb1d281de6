"""
FastAPI route: location ingestion.

    POST /api/v1/locations — store one GPS fix and evaluate it at once

A fix inside a danger zone opens (at most one) ZONE_ENTRY alert and fans
the notification out before the response returns.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from backend.app.alerts.orchestrator import EmergencyOrchestrator
from backend.app.api.schemas import LocationPing
from backend.app.core.dependencies import get_orchestrator

router = APIRouter(prefix="/api/v1/locations", tags=["locations"])


@router.post("", status_code=202, summary="Report a location fix")
async def report_location(
    ping: LocationPing,
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    report = await orchestrator.report_location(
        ping.user_id,
        ping.latitude,
        ping.longitude,
        accuracy_m=ping.accuracy,
        timestamp=ping.timestamp,
    )
    return report.to_dict()
