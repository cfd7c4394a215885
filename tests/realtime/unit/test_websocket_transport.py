import asyncio
import json

import pytest

from tabletop.realtime import websocket_transport
from tabletop.realtime.context import SyncContext
from tabletop.realtime.errors import TransportError
from tabletop.realtime.transport import Subscription
from tabletop.realtime.websocket_transport import WebSocketTransport


class FakeConnection:
    """Hub stand-in that acknowledges every request unless the topic is refused."""

    def __init__(self, refused: tuple[str, ...] = ()) -> None:
        self.refused = set(refused)
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, raw: str) -> None:
        message = json.loads(raw)
        self.sent.append(message)
        if "ref" in message:
            reply = {"type": "reply", "ref": message["ref"], "topic": message.get("topic"), "status": "ok"}
            if message.get("topic") in self.refused:
                reply.update(status="error", reason="access denied")
            self.push(reply)

    def push(self, message: dict) -> None:
        self.incoming.put_nowait(json.dumps(message))

    def drop(self) -> None:
        self.incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self.drop()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        raw = await self.incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


@pytest.fixture
def hub(monkeypatch: pytest.MonkeyPatch):
    state = {"urls": [], "connection": None, "refused": ()}

    async def fake_connect(url: str) -> FakeConnection:
        state["urls"].append(url)
        state["connection"] = FakeConnection(state["refused"])
        return state["connection"]

    monkeypatch.setattr(websocket_transport.websockets, "connect", fake_connect)
    return state


async def _no_token() -> None:
    return None


def _transport(token: str | None = "tok-1") -> WebSocketTransport:
    return WebSocketTransport("ws://hub/ws/realtime", SyncContext(_no_token, access_token=token))


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


def test_join_dispatch_and_broadcast(hub) -> None:
    events: list = []
    changes: list = []
    errors: list = []

    async def scenario() -> None:
        transport = _transport()
        await transport.join_broadcast(
            "session:s1", lambda event, payload: events.append((event, payload)), errors.append
        )
        await transport.join_row_changes("battles", "s1", changes.append, errors.append)
        connection = hub["connection"]
        connection.push(
            {
                "type": "broadcast",
                "topic": "session:s1",
                "event": "move-token",
                "payload": {"tokenId": "t1", "x": 1, "y": 2},
            }
        )
        connection.push(
            {
                "type": "row_change",
                "topic": "changes:battles:s1",
                "table": "battles",
                "op": "INSERT",
                "record": {"id": "b1"},
            }
        )
        connection.push({"type": "broadcast", "topic": "session:other", "event": "move-token", "payload": {}})
        await transport.broadcast("session:s1", "add-chat-line", {"text": "hi"})
        await _settle()
        await transport.close()

    asyncio.run(scenario())

    assert hub["urls"] == ["ws://hub/ws/realtime?token=tok-1"]
    assert hub["connection"].sent == [
        {"type": "join", "topic": "session:s1", "config": {"self": False}, "ref": "1"},
        {"type": "join", "topic": "changes:battles:s1", "config": {}, "ref": "2"},
        {"type": "broadcast", "topic": "session:s1", "event": "add-chat-line", "payload": {"text": "hi"}},
    ]
    assert events == [("move-token", {"tokenId": "t1", "x": 1, "y": 2})]
    assert changes == [{"table": "battles", "op": "INSERT", "record": {"id": "b1"}}]
    assert errors == []
    assert hub["connection"].closed


def test_refused_join_raises_and_forgets_handler(hub) -> None:
    hub["refused"] = ("session:s1",)

    async def scenario() -> None:
        transport = _transport()
        with pytest.raises(TransportError, match="access denied"):
            await transport.join_broadcast("session:s1", lambda event, payload: None, lambda reason: None)
        with pytest.raises(TransportError, match="Not joined"):
            await transport.broadcast("session:s1", "add-chat-line", {"text": "hi"})
        await transport.close()

    asyncio.run(scenario())


def test_connect_requires_a_token(hub) -> None:
    async def scenario() -> None:
        transport = _transport(token=None)
        with pytest.raises(TransportError):
            await transport.join_row_changes("messages", "s1", lambda change: None, lambda reason: None)

    asyncio.run(scenario())

    assert hub["urls"] == []


def test_connection_loss_reports_to_every_subscription(hub) -> None:
    errors: list[str] = []

    async def scenario() -> bool:
        transport = _transport()
        await transport.join_broadcast("session:s1", lambda event, payload: None, errors.append)
        await transport.join_row_changes("messages", "s1", lambda change: None, errors.append)
        hub["connection"].drop()
        await _settle()
        return transport.connected

    connected = asyncio.run(scenario())

    assert connected is False
    assert errors == ["realtime connection closed", "realtime connection closed"]


def test_error_frame_fails_the_broadcast_topic(hub) -> None:
    errors: list[str] = []

    async def scenario() -> None:
        transport = _transport()
        await transport.join_broadcast("session:s1", lambda event, payload: None, errors.append)
        hub["connection"].push({"type": "error", "topic": "session:s1", "reason": "not joined"})
        await _settle()
        await transport.close()

    asyncio.run(scenario())

    assert errors == ["not joined"]


def test_set_auth_and_leave(hub) -> None:
    async def scenario() -> None:
        transport = _transport()
        await transport.set_auth("ignored-before-connect")
        subscription = await transport.join_broadcast("session:s1", lambda event, payload: None, lambda reason: None)
        await transport.set_auth("tok-2")
        await transport.leave(subscription)
        await transport.leave(Subscription(topic="session:unknown"))
        await transport.close()

    asyncio.run(scenario())

    assert len(hub["urls"]) == 1
    assert [message["type"] for message in hub["connection"].sent] == ["join", "access_token", "leave"]
    assert hub["connection"].sent[1]["token"] == "tok-2"


def test_error_frame_fails_a_row_change_topic(hub) -> None:
    change_errors: list[str] = []
    broadcast_errors: list[str] = []

    async def scenario() -> None:
        transport = _transport()
        await transport.join_broadcast("session:s1", lambda event, payload: None, broadcast_errors.append)
        await transport.join_row_changes("battles", "s1", lambda change: None, change_errors.append)
        hub["connection"].push({"type": "error", "topic": "changes:battles:s1", "reason": "feed stopped"})
        hub["connection"].push({"type": "error", "topic": "changes:battles:s1", "reason": "again"})
        await _settle()
        await transport.close()

    asyncio.run(scenario())

    assert change_errors == ["feed stopped"]
    assert broadcast_errors == []
