"""Realtime transport over one websocket connection to the relay hub.

Broadcast topics and row-change topics are multiplexed on the same socket.
Requests that need an acknowledgement (join, leave, access_token) carry a
``ref`` that the hub echoes back in its reply frame.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .context import SyncContext
from .errors import TransportError
from .transport import BroadcastHandler, ErrorHandler, RowChangeHandler, Subscription, changes_topic

logger = logging.getLogger(__name__)


class WebSocketTransport:
    def __init__(self, url: str, context: SyncContext, reply_timeout: float = 10.0) -> None:
        self._url = url
        self._context = context
        self._reply_timeout = reply_timeout
        self._connection: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._refs = itertools.count(1)
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._broadcast_handlers: dict[str, tuple[BroadcastHandler, ErrorHandler]] = {}
        self._change_handlers: dict[str, tuple[RowChangeHandler, ErrorHandler]] = {}

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def _ensure_connected(self) -> Any:
        async with self._connect_lock:
            if self._connection is not None:
                return self._connection
            token = self._context.access_token
            if not token:
                raise TransportError("No access token for the realtime transport")
            try:
                connection = await websockets.connect(f"{self._url}?{urlencode({'token': token})}")
            except (OSError, WebSocketException) as exc:
                raise TransportError(f"Could not connect to {self._url}: {exc}") from exc
            self._connection = connection
            self._reader = asyncio.create_task(self._read_loop(connection))
            logger.info("Realtime transport connected to %s", self._url)
            return connection

    async def _send(self, message: dict[str, Any]) -> None:
        connection = await self._ensure_connected()
        try:
            await connection.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise TransportError(f"Realtime connection closed: {exc}") from exc

    async def _request(self, message: dict[str, Any]) -> dict[str, Any]:
        ref = str(next(self._refs))
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        try:
            await self._send({**message, "ref": ref})
            reply = await asyncio.wait_for(future, self._reply_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"No reply to {message['type']} request") from exc
        finally:
            self._pending.pop(ref, None)

        if reply.get("status") != "ok":
            raise TransportError(str(reply.get("reason") or f"{message['type']} refused"))
        return reply

    async def join_broadcast(
        self,
        topic: str,
        on_event: BroadcastHandler,
        on_error: ErrorHandler,
        *,
        echo: bool = False,
    ) -> Subscription:
        self._broadcast_handlers[topic] = (on_event, on_error)
        try:
            await self._request({"type": "join", "topic": topic, "config": {"self": echo}})
        except TransportError:
            self._broadcast_handlers.pop(topic, None)
            raise
        return Subscription(topic=topic)

    async def join_row_changes(
        self,
        table: str,
        session_id: str,
        on_change: RowChangeHandler,
        on_error: ErrorHandler,
    ) -> Subscription:
        topic = changes_topic(table, session_id)
        self._change_handlers[topic] = (on_change, on_error)
        try:
            await self._request({"type": "join", "topic": topic, "config": {}})
        except TransportError:
            self._change_handlers.pop(topic, None)
            raise
        return Subscription(topic=topic)

    async def broadcast(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        if topic not in self._broadcast_handlers:
            raise TransportError(f"Not joined to {topic}")
        await self._send({"type": "broadcast", "topic": topic, "event": event, "payload": payload})

    async def leave(self, subscription: Subscription) -> None:
        known = self._broadcast_handlers.pop(subscription.topic, None) or self._change_handlers.pop(
            subscription.topic, None
        )
        if known is None or self._connection is None:
            return
        try:
            await self._request({"type": "leave", "topic": subscription.topic})
        except TransportError as exc:
            logger.debug("Leave %s not acknowledged: %s", subscription.topic, exc)

    async def set_auth(self, token: str) -> None:
        # Without a live connection the new token is picked up on the next connect.
        if self._connection is None:
            return
        await self._request({"type": "access_token", "token": token})
        logger.debug("Realtime transport re-authenticated")

    async def close(self) -> None:
        self._broadcast_handlers.clear()
        self._change_handlers.clear()
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
        if self._reader is not None:
            await self._reader
            self._reader = None

    async def _read_loop(self, connection: Any) -> None:
        reason = "realtime connection closed"
        try:
            async for raw in connection:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            reason = f"realtime connection lost: {exc}"

        if self._connection is connection:
            self._connection = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))

        handlers = [on_error for _, on_error in self._broadcast_handlers.values()]
        handlers.extend(on_error for _, on_error in self._change_handlers.values())
        self._broadcast_handlers.clear()
        self._change_handlers.clear()
        for on_error in handlers:
            on_error(reason)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON realtime frame")
            return
        if not isinstance(message, dict):
            return

        kind = message.get("type")
        topic = message.get("topic")
        if kind == "reply":
            future = self._pending.get(str(message.get("ref")))
            if future is not None and not future.done():
                future.set_result(message)
        elif kind == "broadcast" and topic in self._broadcast_handlers:
            on_event, _ = self._broadcast_handlers[topic]
            on_event(message.get("event"), message.get("payload"))
        elif kind == "row_change" and topic in self._change_handlers:
            on_change, _ = self._change_handlers[topic]
            on_change({"table": message.get("table"), "op": message.get("op"), "record": message.get("record")})
        elif kind == "error" and (topic in self._broadcast_handlers or topic in self._change_handlers):
            handlers = self._broadcast_handlers if topic in self._broadcast_handlers else self._change_handlers
            _, on_error = handlers.pop(topic)
            on_error(str(message.get("reason") or "channel error"))
        else:
            logger.debug("Ignoring realtime frame %r for %r", kind, topic)
