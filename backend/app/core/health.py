"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Storage backends (primary service, secondary replica)
    • Notification channel configuration
    • Sweep scheduler liveness and last sweep

Status rules:
    storage      both down → UNHEALTHY; one down → DEGRADED
    channels     none configured → DEGRADED (alerts would all be skipped)
    scheduler    enabled but not running, or last sweep had errors → DEGRADED

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, TYPE_CHECKING

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.core.dependencies import SafetyEngine


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def component(self, name: str) -> ComponentHealth:
        return next(c for c in self.components if c.name == name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_storage(engine: "SafetyEngine") -> ComponentHealth:
    """Ping every storage backend."""
    comp = ComponentHealth(name="storage")
    start = time.monotonic()

    reachable = await engine.router.probe()
    down = [name for name, ok in reachable.items() if not ok]

    if len(down) == len(reachable):
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "No storage backend reachable"
    elif down:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Running on fallback; unreachable: {', '.join(down)}"
    else:
        comp.message = "All backends reachable"

    comp.details = {"backends": reachable, **engine.router.stats.to_dict()}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(engine: "SafetyEngine") -> ComponentHealth:
    """Report which channels have credentials."""
    comp = ComponentHealth(name="channels")
    configured = engine.dispatcher.configured_channels()
    enabled = [name for name, ok in configured.items() if ok]

    if not enabled:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No notification channel configured"
    else:
        comp.message = f"Configured: {', '.join(enabled)}"
    comp.details = configured
    return comp


async def check_scheduler(engine: "SafetyEngine") -> ComponentHealth:
    comp = ComponentHealth(name="scheduler")
    scheduler = engine.scheduler
    last = scheduler.last_summary

    if engine.settings.ENABLE_SCHEDULER and not scheduler.is_running:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Sweep scheduler is not running"
    elif last is not None and last.errors:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Last sweep had {last.errors} errors"
    else:
        comp.message = "OK" if last else "No sweep yet"

    comp.details = {
        "running": scheduler.is_running,
        "sweeps_run": scheduler.sweeps_run,
        "last_sweep_at": last.completed_at.isoformat() if last and last.completed_at else None,
    }
    return comp


async def run_health_check(engine: "SafetyEngine") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        version=engine.settings.APP_VERSION,
        environment=engine.settings.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_storage, check_channels, check_scheduler):
        report.components.append(await check(engine))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
