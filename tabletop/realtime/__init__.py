"""Client-side realtime session synchronization."""

from .config import ClientSettings, load_client_settings
from .context import SyncContext
from .coords import decode, encode
from .errors import InvalidTransition, SessionAccessError, StoreError, SyncError, TransportError
from .events import (
    AddChatLineEvent,
    MoveTokenEvent,
    RowChange,
    UpdateBattleEvent,
    UpdateMapEvent,
    UpdateParticipantsEvent,
    decode_event,
    decode_row_change,
    encode_event,
)
from .http_store import HttpStoreClient
from .outbox import Outbox
from .records import Battle, ChatMessage, MapState, SessionState
from .synchronizer import Synchronizer, SyncStatus, SyncTrigger, transition
from .tokens import Token, normalize_token
from .websocket_transport import WebSocketTransport

__all__ = [
    "AddChatLineEvent",
    "Battle",
    "ChatMessage",
    "ClientSettings",
    "decode",
    "decode_event",
    "decode_row_change",
    "encode",
    "encode_event",
    "HttpStoreClient",
    "InvalidTransition",
    "load_client_settings",
    "MapState",
    "MoveTokenEvent",
    "normalize_token",
    "Outbox",
    "RowChange",
    "SessionAccessError",
    "SessionState",
    "StoreError",
    "SyncContext",
    "SyncError",
    "Synchronizer",
    "SyncStatus",
    "SyncTrigger",
    "Token",
    "transition",
    "TransportError",
    "UpdateBattleEvent",
    "UpdateMapEvent",
    "UpdateParticipantsEvent",
    "WebSocketTransport",
]
