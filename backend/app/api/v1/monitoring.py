"""
FastAPI route: safety sweep control.

    POST /api/v1/monitoring/sweep   — run one sweep now (queues behind a running one)
    GET  /api/v1/monitoring/status  — scheduler state and recent sweep summaries
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from backend.app.core.dependencies import SafetyEngine, get_engine

router = APIRouter(prefix="/api/v1/monitoring", tags=["monitoring"])


@router.post("/sweep", summary="Run a safety sweep now")
async def run_sweep(engine: SafetyEngine = Depends(get_engine)) -> Dict[str, Any]:
    summary = await engine.scheduler.run_once()
    return summary.to_dict()


@router.get("/status", summary="Sweep scheduler status")
async def sweep_status(engine: SafetyEngine = Depends(get_engine)) -> Dict[str, Any]:
    status = engine.scheduler.status()
    status["zones_cached"] = len(engine.scanner.snapshot) if engine.scanner.snapshot else 0
    return status
