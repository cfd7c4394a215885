"""Boundaries the Synchronizer talks through: the durable store and the realtime relay."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

BroadcastHandler = Callable[[str, Any], None]
RowChangeHandler = Callable[[Any], None]
ErrorHandler = Callable[[str], None]


def broadcast_topic(session_id: str) -> str:
    return f"session:{session_id}"


def changes_topic(table: str, session_id: str) -> str:
    return f"changes:{table}:{session_id}"


@dataclass(frozen=True)
class Subscription:
    topic: str


class StoreClient(Protocol):
    async def fetch_session(self, session_id: str) -> dict[str, Any] | None:
        """Return the session row, or None when missing or not readable."""

    async def fetch_map(self, session_id: str) -> dict[str, Any] | None:
        """Return the latest map row for the session."""

    async def fetch_recent_battles(self, session_id: str, limit: int) -> list[dict[str, Any]]:
        """Return battle rows, newest first."""

    async def append_battle_log(self, battle_id: str, message: str) -> None:
        """Persist one activity-log line on a battle."""

    async def post_message(self, session_id: str, content: str) -> dict[str, Any]:
        """Persist one chat message and return the stored row."""


class RealtimeTransport(Protocol):
    async def join_broadcast(
        self,
        topic: str,
        on_event: BroadcastHandler,
        on_error: ErrorHandler,
        *,
        echo: bool = False,
    ) -> Subscription:
        """Join an ephemeral broadcast topic. Raises TransportError when refused."""

    async def join_row_changes(
        self,
        table: str,
        session_id: str,
        on_change: RowChangeHandler,
        on_error: ErrorHandler,
    ) -> Subscription:
        """Subscribe to inserts and updates on ``table`` for one session."""

    async def broadcast(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        """Send one event to the other members of ``topic``."""

    async def leave(self, subscription: Subscription) -> None:
        """Drop a subscription. Unknown subscriptions are ignored."""

    async def set_auth(self, token: str) -> None:
        """Swap the credential without tearing down subscriptions."""

    async def close(self) -> None:
        """Close the underlying connection."""
