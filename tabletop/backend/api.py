"""FastAPI endpoints for sessions, maps, battles and chat, plus the realtime relay."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .config import load_settings
from .security import generate_token, parse_bearer
from .store import SessionStore, create_store

logger = logging.getLogger(__name__)

ROW_CHANGE_TABLES = ("battles", "messages")


class CreateSessionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    participants: list[Any] = Field(default_factory=list)


class CreateSessionResponse(BaseModel):
    session_id: str
    dm_token: str
    player_token: str


class SessionResponse(BaseModel):
    session: dict[str, Any]


class MapResponse(BaseModel):
    map: dict[str, Any]


class UpdateMapRequest(BaseModel):
    grid_size: int | None = Field(default=None, gt=0)
    terrain_data: dict[str, Any] | None = None
    background_image: str | None = None
    tokens: list[dict[str, Any]] | None = None


class BattleResponse(BaseModel):
    battle: dict[str, Any]


class BattlesResponse(BaseModel):
    battles: list[dict[str, Any]]


class CreateBattleRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    monsters: list[Any] = Field(default_factory=list)
    allies: list[Any] = Field(default_factory=list)
    map_ref: str | None = None
    background_image: str | None = None
    log: list[str] = Field(default_factory=list)


class LogEnvelope(BaseModel):
    message: str = Field(min_length=1, max_length=1000)


class InitiativeEnvelope(BaseModel):
    initiative: dict[str, int]


class EntitiesEnvelope(BaseModel):
    monsters: list[Any] | None = None
    allies: list[Any] | None = None
    initiative: dict[str, int] | None = None


class MessageEnvelope(BaseModel):
    content: str = Field(min_length=1, max_length=1000)


class MessageResponse(BaseModel):
    message: dict[str, Any]


class MessagesResponse(BaseModel):
    messages: list[dict[str, Any]]


def session_for_topic(topic: Any) -> str | None:
    """Return the session id a realtime topic is scoped to, or None if unknown."""
    if not isinstance(topic, str):
        return None
    parts = topic.split(":")
    if len(parts) == 2 and parts[0] == "session" and parts[1]:
        return parts[1]
    if len(parts) == 3 and parts[0] == "changes" and parts[1] in ROW_CHANGE_TABLES and parts[2]:
        return parts[2]
    return None


@dataclass(eq=False)
class RealtimeConnection:
    websocket: WebSocket
    token: str
    echo_topics: set[str] = field(default_factory=set)


class RealtimeHub:
    def __init__(self) -> None:
        self._topics: dict[str, set[RealtimeConnection]] = defaultdict(set)

    def join(self, topic: str, connection: RealtimeConnection, echo: bool = False) -> None:
        self._topics[topic].add(connection)
        if echo:
            connection.echo_topics.add(topic)
        else:
            connection.echo_topics.discard(topic)

    def leave(self, topic: str, connection: RealtimeConnection) -> None:
        connections = self._topics.get(topic)
        connection.echo_topics.discard(topic)
        if connections is None:
            return
        connections.discard(connection)
        if not connections:
            self._topics.pop(topic, None)

    def is_member(self, topic: str, connection: RealtimeConnection) -> bool:
        return connection in self._topics.get(topic, set())

    def drop(self, connection: RealtimeConnection) -> None:
        for topic in list(self._topics):
            self.leave(topic, connection)

    async def _fan_out(self, topic: str, message: dict[str, Any], sender: RealtimeConnection | None = None) -> None:
        stale_connections: list[RealtimeConnection] = []
        for connection in list(self._topics.get(topic, set())):
            if connection is sender and topic not in connection.echo_topics:
                continue
            try:
                await connection.websocket.send_json(message)
            except (RuntimeError, WebSocketDisconnect, OSError) as exc:
                logger.info("Dropping dead realtime connection on %s: %s", topic, exc)
                stale_connections.append(connection)
        for connection in stale_connections:
            self.drop(connection)

    async def broadcast(
        self,
        topic: str,
        event: str,
        payload: Any,
        sender: RealtimeConnection | None = None,
    ) -> None:
        message = {"type": "broadcast", "topic": topic, "event": event, "payload": payload}
        await self._fan_out(topic, message, sender=sender)

    async def publish_row_change(self, table: str, op: str, record: dict[str, Any]) -> None:
        topic = f"changes:{table}:{record['session_id']}"
        message = {"type": "row_change", "topic": topic, "table": table, "op": op, "record": record}
        await self._fan_out(topic, message)


def _default_store() -> SessionStore:
    settings = load_settings()
    if settings.uses_dev_salt:
        logger.warning("TABLETOP_SERVER_SALT is not set, hashing tokens with the development salt")
    return create_store(database_url=settings.database_url, server_salt=settings.server_salt)


def get_bearer_token(authorization: str | None = Header(default=None)) -> str:
    token = parse_bearer(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token


def create_app(store: SessionStore | None = None) -> FastAPI:
    app = FastAPI(title="Tabletop Session API", version="0.3.0")
    session_store = store if store is not None else _default_store()
    realtime_hub = RealtimeHub()
    app.state.realtime_hub = realtime_hub

    def get_store() -> SessionStore:
        return session_store

    @app.post("/api/sessions", response_model=CreateSessionResponse)
    def create_session(
        payload: CreateSessionRequest,
        local_store: SessionStore = Depends(get_store),
    ) -> CreateSessionResponse:
        created = local_store.create_session(
            name=payload.name,
            dm_token=generate_token(),
            player_token=generate_token(),
            participants=payload.participants,
        )
        logger.info("Created session %s", created.session_id)
        return CreateSessionResponse(
            session_id=created.session_id,
            dm_token=created.dm_token,
            player_token=created.player_token,
        )

    @app.get("/api/sessions/{session_id}", response_model=SessionResponse)
    def get_session(
        session_id: str,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> SessionResponse:
        access = local_store.get_session_access(session_id=session_id, raw_token=token)
        if access is None:
            raise HTTPException(status_code=404, detail="Session not found or token invalid")
        return SessionResponse(session=access.session)

    @app.get("/api/sessions/{session_id}/map", response_model=MapResponse)
    def get_map(
        session_id: str,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> MapResponse:
        map_row = local_store.get_map(session_id=session_id, raw_token=token)
        if map_row is None:
            raise HTTPException(status_code=404, detail="Map not found or token invalid")
        return MapResponse(map=map_row)

    @app.put("/api/sessions/{session_id}/map", response_model=MapResponse)
    def put_map(
        session_id: str,
        payload: UpdateMapRequest,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> MapResponse:
        fields = payload.model_dump(exclude_unset=True)
        map_row = local_store.update_map(session_id=session_id, raw_token=token, fields=fields)
        if map_row is None:
            raise HTTPException(status_code=403, detail="Map update not allowed")
        return MapResponse(map=map_row)

    @app.get("/api/sessions/{session_id}/battles", response_model=BattlesResponse)
    def list_battles(
        session_id: str,
        limit: int = Query(default=10, ge=1, le=100),
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> BattlesResponse:
        battles = local_store.list_battles(session_id=session_id, raw_token=token, limit=limit)
        if battles is None:
            raise HTTPException(status_code=404, detail="Session not found or token invalid")
        return BattlesResponse(battles=battles)

    @app.post("/api/sessions/{session_id}/battles", response_model=BattleResponse)
    async def create_battle(
        session_id: str,
        payload: CreateBattleRequest,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> BattleResponse:
        fields = payload.model_dump(exclude={"name"})
        battle = local_store.create_battle(session_id=session_id, raw_token=token, name=payload.name, **fields)
        if battle is None:
            raise HTTPException(status_code=403, detail="Battle creation not allowed")
        await realtime_hub.publish_row_change("battles", "INSERT", battle)
        return BattleResponse(battle=battle)

    @app.post("/api/battles/{battle_id}/log", response_model=BattleResponse)
    async def append_log(
        battle_id: str,
        payload: LogEnvelope,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> BattleResponse:
        battle = local_store.append_battle_log(battle_id=battle_id, raw_token=token, message=payload.message)
        if battle is None:
            raise HTTPException(status_code=404, detail="Battle not found")
        await realtime_hub.publish_row_change("battles", "UPDATE", battle)
        return BattleResponse(battle=battle)

    @app.put("/api/battles/{battle_id}/initiative", response_model=BattleResponse)
    async def put_initiative(
        battle_id: str,
        payload: InitiativeEnvelope,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> BattleResponse:
        battle = local_store.update_battle(
            battle_id=battle_id, raw_token=token, fields={"initiative": payload.initiative}
        )
        if battle is None:
            raise HTTPException(status_code=404, detail="Battle not found")
        await realtime_hub.publish_row_change("battles", "UPDATE", battle)
        return BattleResponse(battle=battle)

    @app.put("/api/battles/{battle_id}/entities", response_model=BattleResponse)
    async def put_entities(
        battle_id: str,
        payload: EntitiesEnvelope,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> BattleResponse:
        fields = payload.model_dump(exclude_none=True)
        battle = local_store.update_battle(battle_id=battle_id, raw_token=token, fields=fields)
        if battle is None:
            raise HTTPException(status_code=404, detail="Battle not found")
        await realtime_hub.publish_row_change("battles", "UPDATE", battle)
        return BattleResponse(battle=battle)

    @app.get("/api/sessions/{session_id}/messages", response_model=MessagesResponse)
    def list_messages(
        session_id: str,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> MessagesResponse:
        messages = local_store.list_messages(session_id=session_id, raw_token=token)
        if messages is None:
            raise HTTPException(status_code=404, detail="Session not found or token invalid")
        return MessagesResponse(messages=messages)

    @app.post("/api/sessions/{session_id}/messages", response_model=MessageResponse)
    async def post_message(
        session_id: str,
        payload: MessageEnvelope,
        token: str = Depends(get_bearer_token),
        local_store: SessionStore = Depends(get_store),
    ) -> MessageResponse:
        message = local_store.append_message(session_id=session_id, raw_token=token, content=payload.content)
        if message is None:
            raise HTTPException(status_code=403, detail="Chat not allowed")
        await realtime_hub.publish_row_change("messages", "INSERT", message)
        return MessageResponse(message=message)

    async def handle_frame(connection: RealtimeConnection, frame: dict[str, Any], local_store: SessionStore) -> None:
        kind = frame.get("type")
        topic = frame.get("topic")

        async def reply(status: str, reason: str | None = None) -> None:
            message: dict[str, Any] = {"type": "reply", "ref": frame.get("ref"), "topic": topic, "status": status}
            if reason is not None:
                message["reason"] = reason
            await connection.websocket.send_json(message)

        if kind == "join":
            session_id = session_for_topic(topic)
            if session_id is None:
                await reply("error", "unknown topic")
                return
            if local_store.get_session_access(session_id=session_id, raw_token=connection.token) is None:
                await reply("error", "access denied")
                return
            config = frame.get("config")
            echo = bool(config.get("self")) if isinstance(config, dict) else False
            realtime_hub.join(topic, connection, echo=echo)
            await reply("ok")
        elif kind == "leave":
            if isinstance(topic, str):
                realtime_hub.leave(topic, connection)
            await reply("ok")
        elif kind == "broadcast":
            if not str(topic).startswith("session:") or not realtime_hub.is_member(topic, connection):
                await connection.websocket.send_json({"type": "error", "topic": topic, "reason": "not joined"})
                return
            logger.debug("Relaying %s on %s", frame.get("event"), topic)
            await realtime_hub.broadcast(topic, str(frame.get("event")), frame.get("payload"), sender=connection)
        elif kind == "access_token":
            token = frame.get("token")
            if not isinstance(token, str) or not token:
                await reply("error", "token required")
                return
            connection.token = token
            await reply("ok")
        else:
            await reply("error", "unknown frame type")

    @app.websocket("/ws/realtime")
    async def realtime_ws(
        websocket: WebSocket,
        local_store: SessionStore = Depends(get_store),
    ) -> None:
        token = websocket.query_params.get("token")
        if token is None or token == "":
            await websocket.close(code=1008)
            return

        await websocket.accept()
        connection = RealtimeConnection(websocket=websocket, token=token)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    frame = None
                if not isinstance(frame, dict):
                    await websocket.send_json({"type": "error", "topic": None, "reason": "invalid frame"})
                    continue
                await handle_frame(connection, frame, local_store)
        except WebSocketDisconnect:
            pass
        finally:
            realtime_hub.drop(connection)

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = load_settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
