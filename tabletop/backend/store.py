"""Persistence interfaces and implementations for session data."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol
import uuid

from tabletop.backend.models import DM_ROLE, PLAYER_ROLE, BattleAccess, CreatedSession, SessionAccess
from tabletop.backend.security import hash_token
from tabletop.backend.state import build_battle_row, build_initial_map, build_message_row, build_session_row

logger = logging.getLogger(__name__)

MAP_FIELDS = ("grid_size", "terrain_data", "background_image", "tokens")
BATTLE_FIELDS = ("name", "monsters", "allies", "initiative", "background_image")
_JSON_COLUMNS = {"terrain_data", "tokens", "monsters", "allies", "initiative", "log", "participants"}


def _pick(fields: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if key in allowed}


class SessionStore(Protocol):
    def create_session(
        self, name: str, dm_token: str, player_token: str, participants: list[Any] | None = None
    ) -> CreatedSession:
        """Create a session with its empty map and the two role token hashes."""

    def get_session_access(self, session_id: str, raw_token: str) -> SessionAccess | None:
        """Return role and session row when the token belongs to the session."""

    def get_map(self, session_id: str, raw_token: str) -> dict[str, Any] | None:
        """Return the session map."""

    def update_map(self, session_id: str, raw_token: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Patch map fields and return the new map row."""

    def list_battles(self, session_id: str, raw_token: str, limit: int) -> list[dict[str, Any]] | None:
        """Return battle rows, newest first."""

    def create_battle(self, session_id: str, raw_token: str, name: str, **fields: Any) -> dict[str, Any] | None:
        """Insert a battle. DM only."""

    def get_battle_access(self, battle_id: str, raw_token: str) -> BattleAccess | None:
        """Return the battle row when the token belongs to its session."""

    def append_battle_log(self, battle_id: str, raw_token: str, message: str) -> dict[str, Any] | None:
        """Append one activity-log line and return the battle row."""

    def update_battle(self, battle_id: str, raw_token: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Patch battle fields and return the battle row."""

    def list_messages(self, session_id: str, raw_token: str) -> list[dict[str, Any]] | None:
        """Return chat messages, oldest first."""

    def append_message(self, session_id: str, raw_token: str, content: str) -> dict[str, Any] | None:
        """Store one chat message and return its row."""


@dataclass
class InMemorySessionStore:
    server_salt: str

    def __post_init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}
        self._battle_sessions: dict[str, str] = {}

    def create_session(
        self, name: str, dm_token: str, player_token: str, participants: list[Any] | None = None
    ) -> CreatedSession:
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = {
            "session": build_session_row(session_id=session_id, name=name, participants=participants),
            "tokens": {
                DM_ROLE: hash_token(dm_token, self.server_salt),
                PLAYER_ROLE: hash_token(player_token, self.server_salt),
            },
            "map": build_initial_map(session_id),
            "battles": [],
            "messages": [],
        }
        return CreatedSession(session_id=session_id, dm_token=dm_token, player_token=player_token)

    def _role_for(self, session_id: str, raw_token: str) -> str | None:
        payload = self._sessions.get(session_id)
        if payload is None:
            return None
        raw_hash = hash_token(raw_token, self.server_salt)
        for candidate_role, token_hash in payload["tokens"].items():
            if raw_hash == token_hash:
                return candidate_role
        return None

    def get_session_access(self, session_id: str, raw_token: str) -> SessionAccess | None:
        role = self._role_for(session_id, raw_token)
        if role is None:
            return None
        session = copy.deepcopy(self._sessions[session_id]["session"])
        return SessionAccess(session_id=session_id, role=role, session=session)

    def get_map(self, session_id: str, raw_token: str) -> dict[str, Any] | None:
        if self._role_for(session_id, raw_token) is None:
            return None
        return copy.deepcopy(self._sessions[session_id]["map"])

    def update_map(self, session_id: str, raw_token: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        if self._role_for(session_id, raw_token) is None:
            return None
        payload = self._sessions[session_id]
        next_map = dict(payload["map"])
        next_map.update(copy.deepcopy(_pick(fields, MAP_FIELDS)))
        next_map["updated_at"] = datetime.now(timezone.utc).isoformat()
        payload["map"] = next_map
        return copy.deepcopy(next_map)

    def list_battles(self, session_id: str, raw_token: str, limit: int) -> list[dict[str, Any]] | None:
        if self._role_for(session_id, raw_token) is None:
            return None
        # Battles are appended in creation order.
        battles = list(reversed(self._sessions[session_id]["battles"]))
        return copy.deepcopy(battles[:limit])

    def create_battle(self, session_id: str, raw_token: str, name: str, **fields: Any) -> dict[str, Any] | None:
        if self._role_for(session_id, raw_token) != DM_ROLE:
            return None
        battle = build_battle_row(session_id=session_id, name=name, **fields)
        self._sessions[session_id]["battles"].append(battle)
        self._battle_sessions[battle["id"]] = session_id
        return copy.deepcopy(battle)

    def _find_battle(self, battle_id: str, raw_token: str) -> tuple[str, dict[str, Any]] | None:
        session_id = self._battle_sessions.get(battle_id)
        if session_id is None:
            return None
        role = self._role_for(session_id, raw_token)
        if role is None:
            return None
        for battle in self._sessions[session_id]["battles"]:
            if battle["id"] == battle_id:
                return role, battle
        return None

    def get_battle_access(self, battle_id: str, raw_token: str) -> BattleAccess | None:
        found = self._find_battle(battle_id, raw_token)
        if found is None:
            return None
        role, battle = found
        return BattleAccess(role=role, battle=copy.deepcopy(battle))

    def append_battle_log(self, battle_id: str, raw_token: str, message: str) -> dict[str, Any] | None:
        found = self._find_battle(battle_id, raw_token)
        if found is None:
            return None
        _, battle = found
        battle["log"] = [*battle["log"], str(message)]
        return copy.deepcopy(battle)

    def update_battle(self, battle_id: str, raw_token: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        found = self._find_battle(battle_id, raw_token)
        if found is None:
            return None
        _, battle = found
        battle.update(copy.deepcopy(_pick(fields, BATTLE_FIELDS)))
        return copy.deepcopy(battle)

    def list_messages(self, session_id: str, raw_token: str) -> list[dict[str, Any]] | None:
        if self._role_for(session_id, raw_token) is None:
            return None
        return copy.deepcopy(self._sessions[session_id]["messages"])

    def append_message(self, session_id: str, raw_token: str, content: str) -> dict[str, Any] | None:
        role = self._role_for(session_id, raw_token)
        if role is None:
            return None
        message = build_message_row(session_id=session_id, user_id=role, content=content)
        self._sessions[session_id]["messages"].append(message)
        return copy.deepcopy(message)


def _serialize_row(row: dict[str, Any]) -> dict[str, Any]:
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in row.items()}


@dataclass
class PostgresSessionStore:
    database_url: str
    server_salt: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def _cursor(self, conn: Any) -> Any:
        from psycopg.rows import dict_row

        return conn.cursor(row_factory=dict_row)

    def create_session(
        self, name: str, dm_token: str, player_token: str, participants: list[Any] | None = None
    ) -> CreatedSession:
        session_id = str(uuid.uuid4())
        session = build_session_row(session_id=session_id, name=name, participants=participants)
        initial_map = build_initial_map(session_id)
        now = datetime.now(timezone.utc)

        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    """
                    INSERT INTO sessions (id, name, participants, created_at, updated_at)
                    VALUES (%s, %s, %s::jsonb, %s, %s)
                    """,
                    (session_id, name, json.dumps(session["participants"]), now, now),
                )
                cur.execute(
                    """
                    INSERT INTO session_tokens (id, session_id, role, token_hash, created_at, revoked_at)
                    VALUES (%s, %s, 'DM', %s, %s, NULL), (%s, %s, 'PLAYER', %s, %s, NULL)
                    """,
                    (
                        str(uuid.uuid4()),
                        session_id,
                        hash_token(dm_token, self.server_salt),
                        now,
                        str(uuid.uuid4()),
                        session_id,
                        hash_token(player_token, self.server_salt),
                        now,
                    ),
                )
                cur.execute(
                    """
                    INSERT INTO maps (session_id, grid_size, terrain_data, background_image, tokens, created_at, updated_at)
                    VALUES (%s, %s, '{}'::jsonb, NULL, '[]'::jsonb, %s, %s)
                    """,
                    (session_id, initial_map["grid_size"], now, now),
                )
            conn.commit()

        return CreatedSession(session_id=session_id, dm_token=dm_token, player_token=player_token)

    def get_session_access(self, session_id: str, raw_token: str) -> SessionAccess | None:
        token_hash = hash_token(raw_token, self.server_salt)
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    """
                    SELECT t.role, s.id, s.name, s.participants, s.created_at, s.updated_at
                    FROM sessions s
                    JOIN session_tokens t
                      ON t.session_id = s.id
                    WHERE s.id = %s
                      AND t.token_hash = %s
                      AND t.revoked_at IS NULL
                    """,
                    (session_id, token_hash),
                )
                row = cur.fetchone()

        if row is None:
            return None
        session = _serialize_row(dict(row))
        role = session.pop("role")
        return SessionAccess(session_id=session_id, role=role, session=session)

    def get_map(self, session_id: str, raw_token: str) -> dict[str, Any] | None:
        if self.get_session_access(session_id=session_id, raw_token=raw_token) is None:
            return None
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute("SELECT * FROM maps WHERE session_id = %s", (session_id,))
                row = cur.fetchone()
        return _serialize_row(dict(row)) if row is not None else None

    def update_map(self, session_id: str, raw_token: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        current = self.get_map(session_id=session_id, raw_token=raw_token)
        if current is None:
            return None

        now = datetime.now(timezone.utc)
        next_map = {**current, **_pick(fields, MAP_FIELDS), "updated_at": now.isoformat()}
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    """
                    UPDATE maps
                    SET grid_size = %s, terrain_data = %s::jsonb, background_image = %s,
                        tokens = %s::jsonb, updated_at = %s
                    WHERE session_id = %s
                    """,
                    (
                        next_map["grid_size"],
                        json.dumps(next_map["terrain_data"]),
                        next_map["background_image"],
                        json.dumps(next_map["tokens"]),
                        now,
                        session_id,
                    ),
                )
            conn.commit()
        return next_map

    def list_battles(self, session_id: str, raw_token: str, limit: int) -> list[dict[str, Any]] | None:
        if self.get_session_access(session_id=session_id, raw_token=raw_token) is None:
            return None
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    "SELECT * FROM battles WHERE session_id = %s ORDER BY created_at DESC LIMIT %s",
                    (session_id, limit),
                )
                rows = cur.fetchall()
        return [_serialize_row(dict(row)) for row in rows]

    def create_battle(self, session_id: str, raw_token: str, name: str, **fields: Any) -> dict[str, Any] | None:
        access = self.get_session_access(session_id=session_id, raw_token=raw_token)
        if access is None or access.role != DM_ROLE:
            return None

        battle = build_battle_row(session_id=session_id, name=name, **fields)
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    """
                    INSERT INTO battles (id, session_id, name, slug, map_ref, monsters, allies, log,
                                         initiative, background_image, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb, %s::jsonb, %s, %s)
                    """,
                    (
                        battle["id"],
                        session_id,
                        battle["name"],
                        battle["slug"],
                        battle["map_ref"],
                        json.dumps(battle["monsters"]),
                        json.dumps(battle["allies"]),
                        json.dumps(battle["log"]),
                        json.dumps(battle["initiative"]),
                        battle["background_image"],
                        battle["created_at"],
                    ),
                )
            conn.commit()
        return battle

    def get_battle_access(self, battle_id: str, raw_token: str) -> BattleAccess | None:
        token_hash = hash_token(raw_token, self.server_salt)
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    """
                    SELECT t.role, b.*
                    FROM battles b
                    JOIN session_tokens t
                      ON t.session_id = b.session_id
                    WHERE b.id = %s
                      AND t.token_hash = %s
                      AND t.revoked_at IS NULL
                    """,
                    (battle_id, token_hash),
                )
                row = cur.fetchone()

        if row is None:
            return None
        battle = _serialize_row(dict(row))
        role = battle.pop("role")
        return BattleAccess(role=role, battle=battle)

    def append_battle_log(self, battle_id: str, raw_token: str, message: str) -> dict[str, Any] | None:
        if self.get_battle_access(battle_id=battle_id, raw_token=raw_token) is None:
            return None
        # jsonb || appends in place, no read-modify-write.
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    "UPDATE battles SET log = log || %s::jsonb WHERE id = %s RETURNING *",
                    (json.dumps([str(message)]), battle_id),
                )
                row = cur.fetchone()
            conn.commit()
        return _serialize_row(dict(row)) if row is not None else None

    def update_battle(self, battle_id: str, raw_token: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        access = self.get_battle_access(battle_id=battle_id, raw_token=raw_token)
        if access is None:
            return None
        changes = _pick(fields, BATTLE_FIELDS)
        if not changes:
            return access.battle

        assignments = ", ".join(
            f"{column} = %s::jsonb" if column in _JSON_COLUMNS else f"{column} = %s" for column in changes
        )
        values = [json.dumps(value) if column in _JSON_COLUMNS else value for column, value in changes.items()]
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(f"UPDATE battles SET {assignments} WHERE id = %s RETURNING *", (*values, battle_id))
                row = cur.fetchone()
            conn.commit()
        return _serialize_row(dict(row)) if row is not None else None

    def list_messages(self, session_id: str, raw_token: str) -> list[dict[str, Any]] | None:
        if self.get_session_access(session_id=session_id, raw_token=raw_token) is None:
            return None
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    "SELECT * FROM messages WHERE session_id = %s ORDER BY created_at ASC",
                    (session_id,),
                )
                rows = cur.fetchall()
        return [_serialize_row(dict(row)) for row in rows]

    def append_message(self, session_id: str, raw_token: str, content: str) -> dict[str, Any] | None:
        access = self.get_session_access(session_id=session_id, raw_token=raw_token)
        if access is None:
            return None

        message = build_message_row(session_id=session_id, user_id=access.role, content=content)
        with self._connect() as conn:
            with self._cursor(conn) as cur:
                cur.execute(
                    """
                    INSERT INTO messages (id, session_id, user_id, content, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (message["id"], session_id, message["user_id"], content, message["created_at"]),
                )
            conn.commit()
        return message


def create_store(database_url: str | None, server_salt: str) -> SessionStore:
    if database_url:
        logger.info("Using Postgres session store")
        return PostgresSessionStore(database_url=database_url, server_salt=server_salt)
    return InMemorySessionStore(server_salt=server_salt)
