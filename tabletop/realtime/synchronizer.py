"""Keeps one client's SessionState in step with its peers and the durable store.

Three inputs feed the state: local commands (applied optimistically), peer
broadcasts on ``session:{id}`` and row changes from the ``battles`` and
``messages`` tables. Best-effort side effects (single broadcasts, log
persistence) never surface errors; the row-change feed reconciles later.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from enum import Enum
from functools import partial
from typing import Any, Callable

from .context import SyncContext
from .coords import encode
from .errors import InvalidTransition, SessionAccessError, StoreError, SyncError, TransportError
from .events import AddChatLineEvent, MoveTokenEvent, SyncEvent, decode_event, decode_row_change, encode_event
from .merge import BATTLES_TABLE, MESSAGES_TABLE, append_log_line, apply_event, apply_row_change, move_token
from .outbox import Outbox
from .records import SessionState, normalize_battle, normalize_map
from .transport import RealtimeTransport, StoreClient, Subscription, broadcast_topic

logger = logging.getLogger(__name__)

DEFAULT_RECENT_BATTLES = 10

StateListener = Callable[[SessionState], None]


class SyncStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    ERROR = "error"


class SyncTrigger(str, Enum):
    SELECT = "select"
    READY = "ready"
    FAIL = "fail"
    DESELECT = "deselect"
    EVENT = "event"


_TRANSITIONS: dict[tuple[SyncStatus, SyncTrigger], SyncStatus] = {
    (SyncStatus.IDLE, SyncTrigger.SELECT): SyncStatus.LOADING,
    (SyncStatus.IDLE, SyncTrigger.DESELECT): SyncStatus.IDLE,
    (SyncStatus.LOADING, SyncTrigger.SELECT): SyncStatus.LOADING,
    (SyncStatus.LOADING, SyncTrigger.READY): SyncStatus.LIVE,
    (SyncStatus.LOADING, SyncTrigger.FAIL): SyncStatus.ERROR,
    (SyncStatus.LOADING, SyncTrigger.DESELECT): SyncStatus.IDLE,
    (SyncStatus.LOADING, SyncTrigger.EVENT): SyncStatus.LOADING,
    (SyncStatus.LIVE, SyncTrigger.SELECT): SyncStatus.LOADING,
    (SyncStatus.LIVE, SyncTrigger.FAIL): SyncStatus.ERROR,
    (SyncStatus.LIVE, SyncTrigger.DESELECT): SyncStatus.IDLE,
    (SyncStatus.LIVE, SyncTrigger.EVENT): SyncStatus.LIVE,
    (SyncStatus.ERROR, SyncTrigger.SELECT): SyncStatus.LOADING,
    (SyncStatus.ERROR, SyncTrigger.FAIL): SyncStatus.ERROR,
    (SyncStatus.ERROR, SyncTrigger.DESELECT): SyncStatus.IDLE,
    (SyncStatus.ERROR, SyncTrigger.EVENT): SyncStatus.ERROR,
}


def transition(status: SyncStatus, trigger: SyncTrigger) -> SyncStatus:
    try:
        return _TRANSITIONS[(status, trigger)]
    except KeyError:
        raise InvalidTransition(f"{trigger.value} is not allowed while {status.value}") from None


class Synchronizer:
    def __init__(
        self,
        context: SyncContext,
        store: StoreClient,
        transport: RealtimeTransport,
        outbox: Outbox | None = None,
        recent_battles: int = DEFAULT_RECENT_BATTLES,
    ) -> None:
        self._context = context
        self._store = store
        self._transport = transport
        self._outbox = outbox if outbox is not None else Outbox()
        self._recent_battles = recent_battles

        self._status = SyncStatus.IDLE
        self._error: str | None = None
        self._state: SessionState | None = None
        self._session_id: str | None = None
        self._attempt: object | None = None
        self._subscriptions: list[Subscription] = []
        self._listeners: list[StateListener] = []
        self._refresh_task: asyncio.Task[None] | None = None

        context.on_refresh(self._reauthenticate)

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def state(self) -> SessionState | None:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def select_session(self, session_id: str | None) -> None:
        """Switch to ``session_id`` (None deselects).

        Re-selecting the session that is already loading or live is a no-op.
        Re-selecting after an error retries from scratch.
        """
        if session_id is not None and session_id == self._session_id:
            if self._status in (SyncStatus.LOADING, SyncStatus.LIVE):
                return

        await self._teardown()

        if session_id is None:
            self._trigger(SyncTrigger.DESELECT)
            self._session_id = None
            self._state = None
            self._error = None
            logger.info("Session deselected")
            return

        self._trigger(SyncTrigger.SELECT)
        attempt = object()
        self._attempt = attempt
        self._session_id = session_id
        self._error = None
        self._set_state(SessionState(session_id=session_id))
        logger.info("Loading session %s", session_id)

        try:
            token = await self._context.refresh()
            if not token:
                raise SessionAccessError("No access token available")
            session = await self._store.fetch_session(session_id)
            if session is None:
                raise SessionAccessError(f"Session {session_id} not found or access denied")
            map_row = await self._store.fetch_map(session_id)
            battle_rows = await self._store.fetch_recent_battles(session_id, self._recent_battles)
        except (SessionAccessError, StoreError) as exc:
            if self._is_current(attempt):
                self._fail(str(exc))
            return

        if not self._is_current(attempt):
            logger.debug("Discarding stale snapshot for %s", session_id)
            return
        self._set_state(self._snapshot_state(session_id, session, map_row, battle_rows))

        try:
            await self._subscribe(session_id, attempt)
        except TransportError as exc:
            if self._is_current(attempt):
                self._fail(f"Realtime channel error: {exc}")
            return

        if not self._is_current(attempt) or self._status is not SyncStatus.LOADING:
            return
        self._trigger(SyncTrigger.READY)
        logger.info("Session %s is live", session_id)

    async def close(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        await self.select_session(None)
        await self._outbox.close()

    def _trigger(self, trigger: SyncTrigger) -> None:
        self._status = transition(self._status, trigger)

    def _fail(self, message: str) -> None:
        logger.error("Session %s failed: %s", self._session_id, message)
        self._error = message
        self._trigger(SyncTrigger.FAIL)

    def _is_current(self, attempt: object) -> bool:
        return self._attempt is attempt

    async def _subscribe(self, session_id: str, attempt: object) -> None:
        on_error = partial(self._on_channel_error, session_id)
        joins = (
            lambda: self._transport.join_broadcast(
                broadcast_topic(session_id), partial(self._on_broadcast, session_id), on_error, echo=False
            ),
            lambda: self._transport.join_row_changes(
                BATTLES_TABLE, session_id, partial(self._on_row_change, session_id), on_error
            ),
            lambda: self._transport.join_row_changes(
                MESSAGES_TABLE, session_id, partial(self._on_row_change, session_id), on_error
            ),
        )
        for join in joins:
            subscription = await join()
            if not self._is_current(attempt):
                await self._leave(subscription)
                return
            self._subscriptions.append(subscription)

    async def _teardown(self) -> None:
        self._attempt = None
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await self._leave(subscription)

    async def _leave(self, subscription: Subscription) -> None:
        try:
            await self._transport.leave(subscription)
        except TransportError as exc:
            logger.warning("Could not leave %s: %s", subscription.topic, exc)

    @staticmethod
    def _snapshot_state(
        session_id: str,
        session: dict[str, Any],
        map_row: dict[str, Any] | None,
        battle_rows: list[dict[str, Any]],
    ) -> SessionState:
        battles = tuple(battle for battle in map(normalize_battle, battle_rows) if battle is not None)
        active = battles[0] if battles else None
        participants = session.get("participants")
        return SessionState(
            session_id=session_id,
            map=normalize_map(map_row, session_id=session_id) if map_row is not None else None,
            active_battle=active,
            battles=battles,
            activity_log=active.log if active is not None else (),
            participants=tuple(participants) if isinstance(participants, list) else (),
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def emit(self, event: SyncEvent) -> None:
        """Broadcast ``event`` to peers. Does not touch local state."""
        kind, payload = encode_event(event)
        if self._session_id is None or self._status is not SyncStatus.LIVE:
            logger.debug("Not live, dropping outgoing %s", kind)
            return
        try:
            await self._transport.broadcast(broadcast_topic(self._session_id), kind, payload)
        except TransportError as exc:
            logger.warning("Broadcast of %s failed: %s", kind, exc)

    async def publish(self, event: SyncEvent) -> None:
        """Apply ``event`` locally, then broadcast it."""
        self._apply(lambda state: apply_event(state, event))
        await self.emit(event)

    async def move_token_and_log(self, token_id: str, x: int, y: int) -> None:
        """Move a local token, log the move and tell the other clients.

        The position and the log line are applied locally first. The
        ``add-chat-line`` send is awaited before persistence is queued on the
        outbox and before ``move-token`` goes out, so peers always see the two
        events in that order. Send failures are logged and swallowed; only the
        outbox job touches the store.
        """
        state = self._state
        token = state.map.find_token(token_id) if state is not None and state.map is not None else None
        if state is None or token is None:
            logger.warning("Cannot move unknown token %s", token_id)
            return

        line = f"{token.name} moved to {encode(x, y)}"
        next_state = move_token(state, token_id, x, y)
        self._set_state(replace(next_state, activity_log=append_log_line(next_state.activity_log, line)))

        await self.emit(AddChatLineEvent(text=line))
        self._persist_log_line(line)
        await self.emit(MoveTokenEvent(token_id=token_id, x=x, y=y))

    async def send_chat_message(self, content: str) -> bool:
        session_id = self._session_id
        if session_id is None:
            return False
        try:
            row = await self._store.post_message(session_id, content)
        except StoreError as exc:
            logger.warning("Chat message not sent: %s", exc)
            return False
        if session_id == self._session_id:
            self._on_row_change(session_id, {"table": MESSAGES_TABLE, "op": "INSERT", "record": row})
        return True

    def _persist_log_line(self, line: str) -> None:
        battle = self._state.active_battle if self._state is not None else None
        if battle is None:
            logger.debug("No active battle, activity line kept local")
            return
        battle_id = battle.id
        self._outbox.enqueue(
            f"Append log to battle {battle_id}",
            lambda: self._store.append_battle_log(battle_id, line),
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_broadcast(self, session_id: str, kind: str, payload: Any) -> None:
        if session_id != self._session_id:
            return
        event = decode_event(kind, payload)
        if event is not None:
            logger.debug("Peer event %s", kind)
            self._apply(lambda state: apply_event(state, event))

    def _on_row_change(self, session_id: str, raw: Any) -> None:
        if session_id != self._session_id:
            return
        change = decode_row_change(raw)
        if change is not None:
            logger.debug("Row %s on %s", change.op, change.table)
            self._apply(lambda state: apply_row_change(state, change))

    def _on_channel_error(self, session_id: str, reason: str) -> None:
        if session_id != self._session_id or self._status is SyncStatus.IDLE:
            return
        self._fail(f"Realtime channel error: {reason}")

    def _apply(self, reducer: Callable[[SessionState], SessionState]) -> None:
        if self._state is None:
            return
        self._trigger(SyncTrigger.EVENT)
        self._set_state(reducer(self._state))

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def refresh_credentials(self) -> None:
        await self._context.refresh()

    async def on_focus(self) -> None:
        await self.refresh_credentials()

    def start_credential_refresh(self, interval: float) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop(interval))

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh_credentials()
            except (SyncError, OSError) as exc:
                logger.warning("Credential refresh failed: %s", exc)

    async def _reauthenticate(self, token: str) -> None:
        try:
            await self._transport.set_auth(token)
        except TransportError as exc:
            logger.warning("Realtime re-authentication failed: %s", exc)
