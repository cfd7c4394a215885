"""Row builders for sessions, maps, battles and chat messages."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any

DEFAULT_GRID_SIZE = 20


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "battle"


def build_session_row(session_id: str, name: str, participants: list[Any] | None = None) -> dict[str, Any]:
    now = _utc_now_iso()
    return {
        "id": session_id,
        "name": name,
        "participants": list(participants or []),
        "created_at": now,
        "updated_at": now,
    }


def build_initial_map(session_id: str) -> dict[str, Any]:
    """Return the empty map every new session starts with."""
    now = _utc_now_iso()
    return {
        "session_id": session_id,
        "grid_size": DEFAULT_GRID_SIZE,
        "terrain_data": {},
        "background_image": None,
        "tokens": [],
        "created_at": now,
        "updated_at": now,
    }


def build_battle_row(
    session_id: str,
    name: str,
    monsters: list[Any] | None = None,
    allies: list[Any] | None = None,
    map_ref: str | None = None,
    background_image: str | None = None,
    log: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "session_id": session_id,
        "name": name,
        "slug": slugify(name),
        "map_ref": map_ref,
        "monsters": list(monsters or []),
        "allies": list(allies or []),
        "log": [str(line) for line in log or []],
        "initiative": {},
        "background_image": background_image,
        "created_at": _utc_now_iso(),
    }


def build_message_row(session_id: str, user_id: str, content: str) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "session_id": session_id,
        "user_id": user_id,
        "content": content,
        "created_at": _utc_now_iso(),
    }
