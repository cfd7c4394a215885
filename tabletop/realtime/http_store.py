"""REST client for the session service, authenticated with the context credential."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .context import SyncContext
from .errors import StoreError

logger = logging.getLogger(__name__)

_ACCESS_DENIED = {401, 403, 404}


class HttpStoreClient:
    def __init__(
        self,
        base_url: str,
        context: SyncContext,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._context = context
        self._client = httpx.AsyncClient(base_url=base_url, timeout=10.0, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, headers=self._context.auth_headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response, key: str) -> Any:
        """Return ``body[key]`` of a successful JSON response, else raise StoreError."""
        where = f"{response.request.method} {response.request.url.path}"
        if response.is_error:
            raise StoreError(f"{where} returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise StoreError(f"{where} returned a non-JSON body") from exc
        if not isinstance(body, dict) or key not in body:
            raise StoreError(f"{where} response has no {key!r} field")
        return body[key]

    async def fetch_session(self, session_id: str) -> dict[str, Any] | None:
        response = await self._request("GET", f"/api/sessions/{session_id}")
        if response.status_code in _ACCESS_DENIED:
            logger.info("Session %s not readable (HTTP %s)", session_id, response.status_code)
            return None
        session = self._json(response, "session")
        if session is not None and not isinstance(session, dict):
            raise StoreError("Session payload is not an object")
        return session

    async def fetch_map(self, session_id: str) -> dict[str, Any] | None:
        response = await self._request("GET", f"/api/sessions/{session_id}/map")
        if response.status_code == 404:
            return None
        return self._json(response, "map")

    async def fetch_recent_battles(self, session_id: str, limit: int) -> list[dict[str, Any]]:
        response = await self._request("GET", f"/api/sessions/{session_id}/battles", params={"limit": limit})
        battles = self._json(response, "battles")
        if not isinstance(battles, list):
            raise StoreError("Battle listing is not a list")
        return battles

    async def append_battle_log(self, battle_id: str, message: str) -> None:
        response = await self._request("POST", f"/api/battles/{battle_id}/log", json={"message": message})
        self._json(response, "battle")

    async def post_message(self, session_id: str, content: str) -> dict[str, Any]:
        response = await self._request("POST", f"/api/sessions/{session_id}/messages", json={"content": content})
        return self._json(response, "message")
