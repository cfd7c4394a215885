"""Credential and lookup cache shared by one Synchronizer instance."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]
RefreshListener = Callable[[str], Awaitable[None]]


class SyncContext:
    """Holds the bearer credential used for REST calls and the realtime transport.

    The provider is an opaque async callable returning a fresh token or None.
    Listeners registered with ``on_refresh`` are awaited with every new token,
    which is how the realtime transport re-authenticates in place.
    """

    def __init__(self, token_provider: TokenProvider, access_token: str | None = None) -> None:
        self._token_provider = token_provider
        self._access_token = access_token
        self._listeners: list[RefreshListener] = []

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def on_refresh(self, listener: RefreshListener) -> None:
        self._listeners.append(listener)

    async def refresh(self) -> str | None:
        """Fetch a new token and swap it in. Keeps the old one when none is issued."""
        token = await self._token_provider()
        if not token:
            logger.warning("Token provider returned no credential")
            return self._access_token
        if token == self._access_token:
            return token

        self._access_token = token
        for listener in list(self._listeners):
            await listener(token)
        return token

    def auth_headers(self) -> dict[str, str]:
        if not self._access_token:
            return {}
        return {"Authorization": f"Bearer {self._access_token}"}
