"""In-memory stand-ins for the durable store and the realtime relay."""

import asyncio
import copy
from typing import Any, Callable

import pytest

from tabletop.realtime.context import SyncContext
from tabletop.realtime.errors import StoreError, TransportError
from tabletop.realtime.outbox import Outbox
from tabletop.realtime.synchronizer import Synchronizer
from tabletop.realtime.transport import Subscription, changes_topic


def _session_rows() -> dict[str, Any]:
    return {
        "sessions": {
            "s1": {"id": "s1", "name": "Goblin Cave", "participants": [{"userId": "u1", "role": "DM"}]},
            "s2": {"id": "s2", "name": "Crypt", "participants": []},
        },
        "maps": {
            "s1": {
                "session_id": "s1",
                "grid_size": 20,
                "terrain_data": {"B2": "wall"},
                "tokens": [{"id": "t1", "type": "pc", "x": 0, "y": 0, "name": "Ayla", "image": "", "stats": {}}],
            },
            "s2": {"session_id": "s2", "grid_size": 10, "tokens": []},
        },
        "battles": {
            "s1": [{"id": "b1", "session_id": "s1", "name": "Ambush", "log": ["Battle begins"]}],
            "s2": [],
        },
    }


class FakeStore:
    def __init__(self) -> None:
        rows = _session_rows()
        self.sessions: dict[str, dict[str, Any]] = rows["sessions"]
        self.maps: dict[str, dict[str, Any]] = rows["maps"]
        self.battles: dict[str, list[dict[str, Any]]] = rows["battles"]
        self.gates: dict[str, asyncio.Event] = {}
        self.fetch_error: Exception | None = None
        self.failing_appends = 0
        self.append_attempts = 0
        self.appended: list[tuple[str, str]] = []
        self.messages: list[dict[str, Any]] = []
        self.fail_messages = False

    async def fetch_session(self, session_id: str) -> dict[str, Any] | None:
        gate = self.gates.get(session_id)
        if gate is not None:
            await gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return copy.deepcopy(self.sessions.get(session_id))

    async def fetch_map(self, session_id: str) -> dict[str, Any] | None:
        return copy.deepcopy(self.maps.get(session_id))

    async def fetch_recent_battles(self, session_id: str, limit: int) -> list[dict[str, Any]]:
        return copy.deepcopy(self.battles.get(session_id, [])[:limit])

    async def append_battle_log(self, battle_id: str, message: str) -> None:
        self.append_attempts += 1
        if self.failing_appends > 0:
            self.failing_appends -= 1
            raise StoreError("append failed")
        self.appended.append((battle_id, message))

    async def post_message(self, session_id: str, content: str) -> dict[str, Any]:
        if self.fail_messages:
            raise StoreError("chat down")
        row = {
            "id": f"m{len(self.messages) + 1}",
            "session_id": session_id,
            "user_id": "PLAYER",
            "content": content,
            "created_at": "2024-01-01T00:00:00+00:00",
        }
        self.messages.append(row)
        return copy.deepcopy(row)


class FakeTransport:
    def __init__(self) -> None:
        self.broadcast_handlers: dict[str, tuple[Callable, Callable]] = {}
        self.change_handlers: dict[str, tuple[Callable, Callable]] = {}
        self.joined: list[str] = []
        self.left: list[str] = []
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.tokens: list[str] = []
        self.refuse_topics: set[str] = set()
        self.fail_broadcasts = False

    async def join_broadcast(self, topic, on_event, on_error, *, echo=False) -> Subscription:
        if topic in self.refuse_topics:
            raise TransportError(f"join {topic} refused")
        assert echo is False
        self.broadcast_handlers[topic] = (on_event, on_error)
        self.joined.append(topic)
        return Subscription(topic=topic)

    async def join_row_changes(self, table, session_id, on_change, on_error) -> Subscription:
        topic = changes_topic(table, session_id)
        if topic in self.refuse_topics:
            raise TransportError(f"join {topic} refused")
        self.change_handlers[topic] = (on_change, on_error)
        self.joined.append(topic)
        return Subscription(topic=topic)

    async def broadcast(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        if self.fail_broadcasts:
            raise TransportError("relay unavailable")
        self.sent.append((topic, event, payload))

    async def leave(self, subscription: Subscription) -> None:
        self.broadcast_handlers.pop(subscription.topic, None)
        self.change_handlers.pop(subscription.topic, None)
        self.left.append(subscription.topic)

    async def set_auth(self, token: str) -> None:
        self.tokens.append(token)

    async def close(self) -> None:
        self.broadcast_handlers.clear()
        self.change_handlers.clear()

    def deliver(self, topic: str, event: str, payload: Any) -> None:
        on_event, _ = self.broadcast_handlers[topic]
        on_event(event, payload)

    def deliver_row_change(self, table: str, session_id: str, op: str, record: dict[str, Any]) -> None:
        on_change, _ = self.change_handlers[changes_topic(table, session_id)]
        on_change({"table": table, "op": op, "record": record})

    def fail_channel(self, topic: str, reason: str) -> None:
        _, on_error = self.broadcast_handlers[topic]
        on_error(reason)


class TokenSequence:
    """Token provider returning the queued tokens one by one, then repeating the last."""

    def __init__(self, *tokens: str | None) -> None:
        self._tokens = list(tokens)
        self.calls = 0

    async def __call__(self) -> str | None:
        self.calls += 1
        if len(self._tokens) > 1:
            return self._tokens.pop(0)
        return self._tokens[0] if self._tokens else None


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def make_sync() -> Callable[..., tuple[Synchronizer, FakeTransport]]:
    def factory(
        store: FakeStore,
        provider: Callable | None = None,
        outbox: Outbox | None = None,
    ) -> tuple[Synchronizer, FakeTransport]:
        transport = FakeTransport()
        context = SyncContext(provider if provider is not None else TokenSequence("tok-1"))
        synchronizer = Synchronizer(
            context,
            store,
            transport,
            outbox=outbox if outbox is not None else Outbox(base_delay=0),
        )
        return synchronizer, transport

    return factory


@pytest.fixture
def token_sequence() -> type[TokenSequence]:
    return TokenSequence
