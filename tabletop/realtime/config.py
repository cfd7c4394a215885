"""Configuration helpers for the realtime client."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ClientSettings:
    api_url: str
    realtime_url: str
    token_refresh_seconds: float
    recent_battles: int
    outbox_max_attempts: int
    outbox_base_delay: float
    log_level: str


def realtime_url_for(api_url: str) -> str:
    base = api_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base.removeprefix("https://")
    elif base.startswith("http://"):
        base = "ws://" + base.removeprefix("http://")
    return f"{base}/ws/realtime"


def load_client_settings() -> ClientSettings:
    api_url = os.getenv("TABLETOP_API_URL", "http://127.0.0.1:8000")
    return ClientSettings(
        api_url=api_url,
        realtime_url=os.getenv("TABLETOP_REALTIME_URL") or realtime_url_for(api_url),
        token_refresh_seconds=float(os.getenv("TABLETOP_TOKEN_REFRESH_SECONDS", "50")),
        recent_battles=int(os.getenv("TABLETOP_RECENT_BATTLES", "10")),
        outbox_max_attempts=int(os.getenv("TABLETOP_OUTBOX_MAX_ATTEMPTS", "3")),
        outbox_base_delay=float(os.getenv("TABLETOP_OUTBOX_BASE_DELAY", "0.5")),
        log_level=os.getenv("TABLETOP_LOG_LEVEL", "INFO").upper(),
    )
