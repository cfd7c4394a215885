"""Client-side shapes of the map, battle and chat rows plus the session aggregate."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from .tokens import Token, coerce_int, normalize_token

DEFAULT_GRID_SIZE = 20


@dataclass(frozen=True)
class MapState:
    session_id: str
    grid_size: int = DEFAULT_GRID_SIZE
    terrain: dict[str, Any] = field(default_factory=dict)
    background_image: str | None = None
    tokens: tuple[Token, ...] = ()
    created_at: str | None = None
    updated_at: str | None = None

    def find_token(self, token_id: str) -> Token | None:
        for token in self.tokens:
            if token.id == token_id:
                return token
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "grid_size": self.grid_size,
            "terrain_data": dict(self.terrain),
            "background_image": self.background_image,
            "tokens": [token.to_payload() for token in self.tokens],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Battle:
    id: str
    session_id: str
    name: str = ""
    slug: str = ""
    map_ref: str | None = None
    monsters: tuple[Any, ...] = ()
    allies: tuple[Any, ...] = ()
    log: tuple[str, ...] = ()
    initiative: dict[str, int] = field(default_factory=dict)
    background_image: str | None = None
    created_at: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "name": self.name,
            "slug": self.slug,
            "map_ref": self.map_ref,
            "monsters": list(self.monsters),
            "allies": list(self.allies),
            "log": list(self.log),
            "initiative": dict(self.initiative),
            "background_image": self.background_image,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ChatMessage:
    id: str
    session_id: str
    user_id: str
    content: str
    created_at: str | None = None


@dataclass(frozen=True)
class SessionState:
    """Everything one client knows about the selected session."""

    session_id: str
    map: MapState | None = None
    active_battle: Battle | None = None
    battles: tuple[Battle, ...] = ()
    activity_log: tuple[str, ...] = ()
    participants: tuple[Any, ...] = ()
    messages: tuple[ChatMessage, ...] = ()


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def normalize_map(raw: Any, session_id: str = "") -> MapState:
    record: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    grid_size = coerce_int(record.get("grid_size"), DEFAULT_GRID_SIZE)
    if grid_size <= 0:
        grid_size = DEFAULT_GRID_SIZE

    terrain = record.get("terrain_data", record.get("terrain"))
    raw_tokens = record.get("tokens")
    tokens = tuple(
        normalize_token(item, grid_size=grid_size)
        for item in (raw_tokens if isinstance(raw_tokens, list) else [])
    )
    return MapState(
        session_id=str(record.get("session_id") or session_id),
        grid_size=grid_size,
        terrain=dict(terrain) if isinstance(terrain, Mapping) else {},
        background_image=_optional_str(record.get("background_image")),
        tokens=tokens,
        created_at=_optional_str(record.get("created_at")),
        updated_at=_optional_str(record.get("updated_at")),
    )


def normalize_battle(raw: Any) -> Battle | None:
    """Return a Battle, or None when the record carries no identifier."""
    if not isinstance(raw, Mapping) or not raw.get("id"):
        return None

    log = raw.get("log")
    initiative = raw.get("initiative")
    monsters = raw.get("monsters")
    allies = raw.get("allies")
    rolls: dict[str, int] = {}
    if isinstance(initiative, Mapping):
        for entity_id, roll in initiative.items():
            if isinstance(roll, int) and not isinstance(roll, bool):
                rolls[str(entity_id)] = roll

    return Battle(
        id=str(raw["id"]),
        session_id=str(raw.get("session_id") or ""),
        name=_text(raw.get("name")),
        slug=_text(raw.get("slug")),
        map_ref=_optional_str(raw.get("map_ref")),
        monsters=tuple(monsters) if isinstance(monsters, list) else (),
        allies=tuple(allies) if isinstance(allies, list) else (),
        log=tuple(str(line) for line in log) if isinstance(log, list) else (),
        initiative=rolls,
        background_image=_optional_str(raw.get("background_image")),
        created_at=_optional_str(raw.get("created_at")),
    )


def normalize_chat_message(raw: Any) -> ChatMessage | None:
    if not isinstance(raw, Mapping) or not raw.get("id"):
        return None
    return ChatMessage(
        id=str(raw["id"]),
        session_id=str(raw.get("session_id") or ""),
        user_id=str(raw.get("user_id") or ""),
        content=_text(raw.get("content")),
        created_at=_optional_str(raw.get("created_at")),
    )
