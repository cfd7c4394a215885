"""Typed peer events and row-change notifications with total decoders."""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

MOVE_TOKEN = "move-token"
UPDATE_MAP = "update-map"
ADD_CHAT_LINE = "add-chat-line"
UPDATE_BATTLE = "update-battle"
UPDATE_PARTICIPANTS = "update-participants"

EVENT_KINDS = (MOVE_TOKEN, UPDATE_MAP, ADD_CHAT_LINE, UPDATE_BATTLE, UPDATE_PARTICIPANTS)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class MoveTokenEvent(_Event):
    kind: Literal["move-token"] = MOVE_TOKEN
    token_id: str = Field(alias="tokenId", min_length=1)
    x: int
    y: int


class UpdateMapEvent(_Event):
    kind: Literal["update-map"] = UPDATE_MAP
    map: dict[str, Any]


class AddChatLineEvent(_Event):
    kind: Literal["add-chat-line"] = ADD_CHAT_LINE
    text: str


class UpdateBattleEvent(_Event):
    kind: Literal["update-battle"] = UPDATE_BATTLE
    battle: dict[str, Any]


class UpdateParticipantsEvent(_Event):
    kind: Literal["update-participants"] = UPDATE_PARTICIPANTS
    participants: list[Any]


SyncEvent = Annotated[
    Union[MoveTokenEvent, UpdateMapEvent, AddChatLineEvent, UpdateBattleEvent, UpdateParticipantsEvent],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[SyncEvent] = TypeAdapter(SyncEvent)


class RowChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str
    op: Literal["INSERT", "UPDATE"]
    record: dict[str, Any]


def decode_event(kind: Any, payload: Any) -> SyncEvent | None:
    """Validate a broadcast frame. Returns None instead of raising."""
    if kind not in EVENT_KINDS or not isinstance(payload, dict):
        logger.warning("Dropping broadcast with unknown kind or payload: %r", kind)
        return None
    try:
        return _event_adapter.validate_python({**payload, "kind": kind})
    except ValidationError as exc:
        logger.warning("Dropping malformed %s event: %s", kind, exc.errors(include_url=False))
        return None


def encode_event(event: SyncEvent) -> tuple[str, dict[str, Any]]:
    payload = event.model_dump(by_alias=True, exclude={"kind"})
    return event.kind, payload


def decode_row_change(raw: Any) -> RowChange | None:
    if not isinstance(raw, dict):
        logger.warning("Dropping row change that is not an object")
        return None
    try:
        return RowChange.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Dropping malformed row change: %s", exc.errors(include_url=False))
        return None
