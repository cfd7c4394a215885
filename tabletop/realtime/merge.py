"""Reducers that fold peer events and row changes into a SessionState."""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from .events import (
    AddChatLineEvent,
    MoveTokenEvent,
    RowChange,
    SyncEvent,
    UpdateBattleEvent,
    UpdateMapEvent,
    UpdateParticipantsEvent,
)
from .records import Battle, SessionState, normalize_battle, normalize_chat_message, normalize_map
from .tokens import clamp_to_grid

BATTLES_TABLE = "battles"
MESSAGES_TABLE = "messages"


def append_log_line(log: Sequence[str], line: str) -> tuple[str, ...]:
    """Append ``line`` unless it repeats the last entry."""
    if log and log[-1] == line:
        return tuple(log)
    return (*log, line)


def apply_event(state: SessionState, event: SyncEvent) -> SessionState:
    if isinstance(event, MoveTokenEvent):
        return move_token(state, event.token_id, event.x, event.y)
    if isinstance(event, UpdateMapEvent):
        return replace(state, map=normalize_map(event.map, session_id=state.session_id))
    if isinstance(event, AddChatLineEvent):
        return replace(state, activity_log=append_log_line(state.activity_log, event.text))
    if isinstance(event, UpdateBattleEvent):
        return _apply_battle_update(state, event)
    if isinstance(event, UpdateParticipantsEvent):
        return replace(state, participants=tuple(event.participants))
    return state


def move_token(state: SessionState, token_id: str, x: int, y: int) -> SessionState:
    """Place a token; unknown tokens leave the state untouched."""
    current_map = state.map
    if current_map is None or current_map.find_token(token_id) is None:
        return state

    x = clamp_to_grid(x, current_map.grid_size)
    y = clamp_to_grid(y, current_map.grid_size)
    tokens = tuple(
        replace(token, x=x, y=y) if token.id == token_id else token
        for token in current_map.tokens
    )
    return replace(state, map=replace(current_map, tokens=tokens))


def _apply_battle_update(state: SessionState, event: UpdateBattleEvent) -> SessionState:
    battle = normalize_battle(event.battle)
    if battle is None or state.active_battle is None or battle.id != state.active_battle.id:
        return state
    return replace(state, active_battle=battle)


def apply_row_change(state: SessionState, change: RowChange) -> SessionState:
    if change.table == BATTLES_TABLE:
        battle = normalize_battle(change.record)
        if battle is None or battle.session_id != state.session_id:
            return state
        if change.op == "INSERT":
            return _apply_battle_insert(state, battle)
        return _apply_battle_row_update(state, battle)

    if change.table == MESSAGES_TABLE and change.op == "INSERT":
        message = normalize_chat_message(change.record)
        if message is None or message.session_id != state.session_id:
            return state
        if any(existing.id == message.id for existing in state.messages):
            return state
        return replace(state, messages=(*state.messages, message))

    return state


def _apply_battle_insert(state: SessionState, battle: Battle) -> SessionState:
    next_state = state
    if all(existing.id != battle.id for existing in state.battles):
        next_state = replace(next_state, battles=(battle, *state.battles))

    if next_state.active_battle is None:
        next_state = replace(next_state, active_battle=battle)
        if not next_state.activity_log:
            next_state = replace(next_state, activity_log=battle.log)
    return next_state


def _apply_battle_row_update(state: SessionState, battle: Battle) -> SessionState:
    # Updates never touch the activity log; only adoption on insert seeds it.
    battles = tuple(battle if existing.id == battle.id else existing for existing in state.battles)
    next_state = replace(state, battles=battles)
    if state.active_battle is not None and state.active_battle.id == battle.id:
        next_state = replace(next_state, active_battle=battle)
    return next_state
