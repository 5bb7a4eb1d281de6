"""
FastAPI route: alert lifecycle endpoints.

Provides endpoints to:
    GET  /api/v1/alerts                      — list alerts (filter by status / user)
    GET  /api/v1/alerts/{id}                 — one alert
    GET  /api/v1/alerts/{id}/attempts        — notification audit trail
    POST /api/v1/alerts/sos                  — manual SOS / panic alert
    POST /api/v1/alerts/{id}/acknowledge     — operator acknowledgement
    POST /api/v1/alerts/{id}/resolve         — operator resolution
    POST /api/v1/alerts/{id}/retry           — re-dispatch a failed alert
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query

from backend.app.alerts.models import AlertStatus, AlertType
from backend.app.alerts.orchestrator import EmergencyOrchestrator
from backend.app.api.schemas import (
    AcknowledgeRequest,
    AlertListResponse,
    AttemptListResponse,
    ManualAlertRequest,
    ResolveRequest,
)
from backend.app.core.dependencies import get_orchestrator
from backend.app.core.errors import ValidationError

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


def _actor(body_actor: Optional[str], header_actor: Optional[str]) -> str:
    actor = body_actor or header_actor
    if not actor:
        raise ValidationError("actor_id or X-Actor-ID header is required", field="actor_id")
    return actor


@router.get("", response_model=AlertListResponse, summary="List alerts")
async def list_alerts(
    status: Optional[AlertStatus] = Query(None, description="Filter by status"),
    user_id: Optional[str] = Query(None, description="Filter by user"),
    limit: int = Query(100, ge=1, le=500),
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
):
    alerts = await orchestrator.list_alerts(status=status, user_id=user_id, limit=limit)
    return AlertListResponse(count=len(alerts), alerts=[a.to_dict() for a in alerts])


@router.post("/sos", status_code=201, summary="Raise a manual SOS / panic alert")
async def trigger_sos(
    body: ManualAlertRequest,
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Creates a CRITICAL alert and notifies the user, their emergency
    contacts and emergency services. 409 if one is already open.
    """
    result = await orchestrator.trigger_manual_alert(
        body.user_id,
        body.latitude,
        body.longitude,
        alert_type=AlertType(body.alert_type.value),
        message=body.message,
    )
    return {
        "alert": result.alert.to_dict(),
        "dispatch": result.report.to_dict() if result.report else None,
        "dispatch_error": result.dispatch_error,
    }


@router.get("/{alert_id}", summary="Get one alert")
async def get_alert(
    alert_id: str,
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    alert = await orchestrator.get_alert(alert_id)
    return alert.to_dict()


@router.get("/{alert_id}/attempts", response_model=AttemptListResponse, summary="Notification attempts")
async def list_attempts(
    alert_id: str,
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
):
    attempts = await orchestrator.list_attempts(alert_id)
    return AttemptListResponse(
        alert_id=alert_id,
        count=len(attempts),
        attempts=[a.to_dict() for a in attempts],
    )


@router.post("/{alert_id}/acknowledge", summary="Acknowledge an alert")
async def acknowledge_alert(
    alert_id: str,
    body: Optional[AcknowledgeRequest] = None,
    x_actor_id: Optional[str] = Header(None),
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    actor = _actor(body.actor_id if body else None, x_actor_id)
    alert = await orchestrator.acknowledge_alert(alert_id, actor)
    return alert.to_dict()


@router.post("/{alert_id}/resolve", summary="Resolve an alert")
async def resolve_alert(
    alert_id: str,
    body: Optional[ResolveRequest] = None,
    x_actor_id: Optional[str] = Header(None),
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    actor = _actor(body.actor_id if body else None, x_actor_id)
    alert = await orchestrator.resolve_alert(
        alert_id, actor, body.resolution_note if body else None
    )
    return alert.to_dict()


@router.post("/{alert_id}/retry", summary="Retry notification of a failed alert")
async def retry_alert(
    alert_id: str,
    orchestrator: EmergencyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    report = await orchestrator.retry_dispatch(alert_id)
    return report.to_dict()
