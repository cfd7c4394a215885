"""Domain models for session access and persistence contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DM_ROLE = "DM"
PLAYER_ROLE = "PLAYER"


@dataclass(frozen=True)
class SessionAccess:
    session_id: str
    role: str
    session: dict[str, Any]


@dataclass(frozen=True)
class BattleAccess:
    role: str
    battle: dict[str, Any]


@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    dm_token: str
    player_token: str
