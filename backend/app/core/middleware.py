"""
Request middleware — correlation IDs, operator identity, timing.

Provides:
    • X-Request-ID header injection (correlation ID)
    • Request/response timing (X-Process-Time header)
    • Log context for every record emitted while the request runs:
          request_id, method, endpoint
          actor_id   from X-Actor-ID (operator acknowledging / resolving)
          alert_id   when the path addresses one alert
    • One access-log line per request; probes and docs stay quiet
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import bind_request_context, clear_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")

# /api/v1/alerts/{alert_id}[/acknowledge|/resolve|/retry|/attempts]
_ALERT_PATH = re.compile(r"^/api/v1/alerts/(?!sos(?:/|$))([^/]+)")


def alert_id_from_path(path: str) -> Optional[str]:
    match = _ALERT_PATH.match(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Bind request context, time the call, log the outcome.

    Operator actions are logged at INFO with the actor; client errors at
    WARNING; anything that escapes the error handlers at ERROR.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        actor_id = request.headers.get("X-Actor-ID")

        bind_request_context(
            request_id=request_id,
            method=request.method,
            endpoint=path,
            actor_id=actor_id,
            alert_id=alert_id_from_path(path),
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self._log(request.method, path, 500, start, actor_id, level=logging.ERROR)
            clear_request_context()
            raise

        duration_ms = self._log(request.method, path, response.status_code, start, actor_id)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        clear_request_context()
        return response

    @staticmethod
    def _log(
        method: str,
        path: str,
        status_code: int,
        start: float,
        actor_id: Optional[str],
        level: Optional[int] = None,
    ) -> float:
        duration_ms = (time.perf_counter() - start) * 1000
        if level is None:
            if path.startswith(_QUIET_PREFIXES):
                return duration_ms
            level = logging.WARNING if status_code >= 400 else logging.INFO

        by = f" by {actor_id}" if actor_id else ""
        logger.log(
            level,
            "%s %s → %d (%.1fms)%s",
            method, path, status_code, duration_ms, by,
            extra={
                "duration_ms": duration_ms,
                "status_code": status_code,
                "endpoint": path,
            },
        )
        return duration_ms
