"""Canonical map tokens and the coercion of loosely typed token records."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

TOKEN_TYPES = ("monster", "pc")
DEFAULT_TOKEN_TYPE = "pc"
DEFAULT_TOKEN_NAME = "Unnamed Token"


@dataclass(frozen=True)
class Token:
    id: str
    type: str
    x: int
    y: int
    name: str
    image: str = ""
    stats: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "x": self.x,
            "y": self.y,
            "name": self.name,
            "image": self.image,
            "stats": dict(self.stats),
        }


def coerce_int(value: Any, default: int = 0) -> int:
    """Return ``value`` as an int, or ``default`` when it is not numeric."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else default
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return default
        return int(parsed) if math.isfinite(parsed) else default
    return default


def clamp_to_grid(value: int, grid_size: int) -> int:
    return min(max(value, 0), grid_size - 1)


def normalize_token(raw: Any, grid_size: int | None = None) -> Token:
    """Coerce an untrusted record into a Token. Never raises."""
    record: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}

    raw_id = record.get("id")
    if isinstance(raw_id, bool) or raw_id is None or str(raw_id).strip() == "":
        token_id = str(uuid.uuid4())
    else:
        token_id = str(raw_id)

    token_type = record.get("type")
    if token_type not in TOKEN_TYPES:
        token_type = DEFAULT_TOKEN_TYPE

    x = coerce_int(record.get("x"))
    y = coerce_int(record.get("y"))
    if grid_size is not None and grid_size > 0:
        x = clamp_to_grid(x, grid_size)
        y = clamp_to_grid(y, grid_size)

    name = record.get("name")
    if not isinstance(name, str) or not name.strip():
        name = DEFAULT_TOKEN_NAME

    image = record.get("image")
    stats = record.get("stats")

    return Token(
        id=token_id,
        type=token_type,
        x=x,
        y=y,
        name=name,
        image=image if isinstance(image, str) else "",
        stats=dict(stats) if isinstance(stats, Mapping) else {},
    )
