"""Settings for the session service, read from ``TABLETOP_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEV_SERVER_SALT = "dev-salt"


@dataclass(frozen=True)
class BackendSettings:
    server_salt: str
    database_url: str | None
    host: str
    port: int
    log_level: str

    @property
    def uses_dev_salt(self) -> bool:
        return self.server_salt == DEV_SERVER_SALT


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def load_settings() -> BackendSettings:
    return BackendSettings(
        server_salt=os.getenv("TABLETOP_SERVER_SALT", DEV_SERVER_SALT),
        database_url=os.getenv("TABLETOP_DATABASE_URL") or None,
        host=os.getenv("TABLETOP_HOST", "127.0.0.1"),
        port=_int_env("TABLETOP_PORT", 8000),
        log_level=os.getenv("TABLETOP_LOG_LEVEL", "INFO").upper(),
    )
