"""
rest_backend.py - Primary storage: the hosted backend service over HTTP.

Speaks camelCase JSON with bearer-key auth. Status handling:

    2xx            → result
    404            → missing record (None / {"updated": False, ...})
    409            → rejected precondition (compare-and-set lost)
    anything else  → BackendUnavailableError  (router falls back)
    transport err  → BackendUnavailableError
    non-JSON or wrong-shape body → BackendUnavailableError

Endpoints
---------
    GET    /api/users?active=true
    GET    /api/users/{user_id}
    GET    /api/users/{user_id}/locations/latest
    POST   /api/users/{user_id}/locations
    GET    /api/zones[?type=danger]
    POST   /api/alerts/conditional            insert unless an open alert exists
    GET    /api/alerts/open?userId=&type=
    GET    /api/alerts[?status=&userId=&limit=]
    GET    /api/alerts/{alert_id}
    PATCH  /api/alerts/{alert_id}/status      {"expected": [...], "status", "fields"}
    PUT    /api/alerts/{alert_id}/attempts    upsert unless already sent
    GET    /api/alerts/{alert_id}/attempts
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx

from backend.app.core.errors import BackendUnavailableError
from backend.app.storage.backend import StorageBackend
from backend.app.storage.operations import encode

logger = logging.getLogger(__name__)


class RestBackend(StorageBackend):
    """
    Async client for the primary backend service.

    Parameters
    ----------
    base_url : str
        Service root, e.g. ``https://api.example.org``.
    api_key : str | None
        Sent as ``Authorization: Bearer <key>``.
    timeout_seconds : float
        httpx timeout; the router applies its own overall bound as well.
    client : httpx.AsyncClient | None
        Injected client (tests pass one built on ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        name: str = "primary",
    ) -> None:
        self.name = name
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if client is None:
            client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout_seconds)
        client.headers.update(headers)
        self._client = client

    async def close(self) -> None:
        await self._client.aclose()

    async def ping(self) -> bool:
        try:
            resp = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return resp.status_code < 500

    # ── Transport ──

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        accept: Iterable[int] = (),
    ) -> Tuple[int, Any]:
        """Send one request; return (status, decoded body) for 2xx or accepted codes."""
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            resp = await self._client.request(
                method,
                path,
                params=query or None,
                json=encode(json, camel=True) if json is not None else None,
            )
        except httpx.HTTPError as exc:
            raise BackendUnavailableError(self.name, f"{method} {path}: {exc}") from exc

        if resp.is_success or resp.status_code in accept:
            try:
                body = resp.json() if resp.content else None
            except ValueError as exc:
                raise BackendUnavailableError(
                    self.name,
                    f"{method} {path} returned a body that is not JSON",
                    status_code=resp.status_code,
                ) from exc
            return resp.status_code, body

        raise BackendUnavailableError(
            self.name,
            f"{method} {path} returned {resp.status_code}",
            status_code=resp.status_code,
        )

    def _object(self, body: Any, what: str, keys: Iterable[str] = ()) -> Dict[str, Any]:
        """Return ``body`` as a dict holding ``keys`` or raise BackendUnavailableError."""
        if not isinstance(body, Mapping):
            raise BackendUnavailableError(
                self.name, f"{what}: expected a JSON object, got {type(body).__name__}"
            )
        missing = [k for k in keys if k not in body]
        if missing:
            raise BackendUnavailableError(
                self.name, f"{what}: response lacks {', '.join(missing)}"
            )
        return dict(body)

    async def _get_one(self, path: str) -> Optional[Dict[str, Any]]:
        status, body = await self._request("GET", path, accept=(404,))
        if status == 404 or body is None:
            return None
        return self._object(body, f"GET {path}")

    async def _get_many(self, path: str, params: Optional[Mapping[str, Any]] = None) -> List[Any]:
        _, body = await self._request("GET", path, params=params)
        if isinstance(body, Mapping):
            # Some endpoints wrap collections: {"items": [...]}
            body = body.get("items", [])
        if body is not None and not isinstance(body, list):
            raise BackendUnavailableError(
                self.name, f"GET {path}: expected a JSON list, got {type(body).__name__}"
            )
        return list(body or [])

    # ── Users & locations ──

    async def _users_list_active(self) -> List[Dict[str, Any]]:
        return await self._get_many("/api/users", {"active": "true"})

    async def _users_get(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._get_one(f"/api/users/{user_id}")

    async def _locations_latest(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._get_one(f"/api/users/{user_id}/locations/latest")

    async def _locations_append(self, user_id: str, location: Mapping[str, Any]) -> Dict[str, Any]:
        _, body = await self._request(
            "POST", f"/api/users/{user_id}/locations", json=dict(location)
        )
        return body or {"user_id": user_id, **dict(location)}

    # ── Zones ──

    async def _zones_list(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._get_many("/api/zones", {"type": kind})

    # ── Alerts ──

    async def _alerts_insert_if_absent(self, alert: Mapping[str, Any]) -> Dict[str, Any]:
        _, body = await self._request("POST", "/api/alerts/conditional", json=dict(alert))
        return self._object(body, "POST /api/alerts/conditional", ("created", "alert"))

    async def _alerts_get(self, alert_id: str) -> Optional[Dict[str, Any]]:
        return await self._get_one(f"/api/alerts/{alert_id}")

    async def _alerts_find_open(self, user_id: str, alert_type: str) -> Optional[Dict[str, Any]]:
        status, body = await self._request(
            "GET",
            "/api/alerts/open",
            params={"userId": user_id, "type": alert_type},
            accept=(404,),
        )
        if status == 404 or body is None:
            return None
        return self._object(body, "GET /api/alerts/open")

    async def _alerts_list(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        return await self._get_many(
            "/api/alerts", {"status": status, "userId": user_id, "limit": limit}
        )

    async def _alerts_compare_and_set(
        self,
        alert_id: str,
        expected: Iterable[str],
        status: str,
        fields: Mapping[str, Any],
    ) -> Dict[str, Any]:
        code, body = await self._request(
            "PATCH",
            f"/api/alerts/{alert_id}/status",
            json={"expected": list(expected), "status": status, "fields": dict(fields)},
            accept=(404, 409),
        )
        what = f"PATCH /api/alerts/{alert_id}/status"
        if code == 404:
            return {"updated": False, "alert": None}
        if code == 409:
            current = self._object(body or {}, what).get("alert")
            return {"updated": False, "alert": current}
        return {"updated": True, "alert": self._object(body, what)}

    # ── Notification attempts ──

    async def _attempts_upsert(self, attempt: Mapping[str, Any]) -> Dict[str, Any]:
        _, body = await self._request(
            "PUT", f"/api/alerts/{attempt['alert_id']}/attempts", json=dict(attempt)
        )
        return self._object(body, "PUT /api/alerts/{alert_id}/attempts", ("attempt",))

    async def _attempts_list(self, alert_id: str) -> List[Dict[str, Any]]:
        return await self._get_many(f"/api/alerts/{alert_id}/attempts")
