"""Session service: REST endpoints, persistence and the realtime relay."""

from .config import BackendSettings, load_settings
from .security import generate_token, hash_token, parse_bearer, verify_token
from .state import build_initial_map
from .store import InMemorySessionStore, PostgresSessionStore, SessionStore, create_store

__all__ = [
    "BackendSettings",
    "build_initial_map",
    "create_store",
    "generate_token",
    "hash_token",
    "InMemorySessionStore",
    "load_settings",
    "parse_bearer",
    "PostgresSessionStore",
    "SessionStore",
    "verify_token",
]
