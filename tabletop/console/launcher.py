"""Console launcher that follows one session's activity log from the terminal."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import subprocess
import sys
import time
from pathlib import Path
from urllib import error, request

from tabletop.realtime.config import load_client_settings, realtime_url_for
from tabletop.realtime.context import SyncContext
from tabletop.realtime.http_store import HttpStoreClient
from tabletop.realtime.outbox import Outbox
from tabletop.realtime.records import SessionState
from tabletop.realtime.synchronizer import Synchronizer, SyncStatus
from tabletop.realtime.websocket_transport import WebSocketTransport

ROOT_DIR = Path(__file__).resolve().parents[2]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_client_settings()
    parser = argparse.ArgumentParser(description="Follow a tabletop session")
    parser.add_argument("--server", default=settings.api_url)
    parser.add_argument("--session-id", required=True)
    parser.add_argument("--token", default=os.getenv("TABLETOP_TOKEN", ""))
    parser.add_argument("--start-server", action="store_true")
    return parser.parse_args(argv)


def wait_for_server(server_url: str, timeout_s: float = 8.0) -> bool:
    start = time.time()
    while time.time() - start < timeout_s:
        try:
            with request.urlopen(f"{server_url}/docs", timeout=0.5) as response:
                if int(response.status) < 500:
                    return True
        except (error.URLError, TimeoutError):
            pass
        time.sleep(0.2)
    return False


def maybe_start_server(server_url: str) -> subprocess.Popen[str] | None:
    host_port = server_url.removeprefix("http://")
    host, port = host_port.split(":", maxsplit=1)
    command = [
        sys.executable,
        "-m",
        "uvicorn",
        "tabletop.backend.api:app",
        "--host",
        host,
        "--port",
        port,
    ]
    process = subprocess.Popen(command, cwd=str(ROOT_DIR), env=os.environ.copy())
    if wait_for_server(server_url):
        return process
    process.terminate()
    return None


class ActivityPrinter:
    """Prints activity-log lines that were not printed before."""

    def __init__(self, stream=sys.stdout) -> None:
        self._stream = stream
        self._printed = 0

    def __call__(self, state: SessionState) -> None:
        if len(state.activity_log) < self._printed:
            self._printed = 0
        for line in state.activity_log[self._printed:]:
            print(line, file=self._stream, flush=True)
        self._printed = len(state.activity_log)


async def follow_session(server: str, session_id: str, token: str) -> int:
    settings = load_client_settings()

    async def provide_token() -> str | None:
        return token or None

    context = SyncContext(provide_token)
    store = HttpStoreClient(server, context)
    transport = WebSocketTransport(realtime_url_for(server), context)
    synchronizer = Synchronizer(
        context,
        store,
        transport,
        outbox=Outbox(settings.outbox_max_attempts, settings.outbox_base_delay),
        recent_battles=settings.recent_battles,
    )
    synchronizer.add_listener(ActivityPrinter())
    try:
        await synchronizer.select_session(session_id)
        if synchronizer.status is not SyncStatus.LIVE:
            print(synchronizer.error or "Session could not be loaded", file=sys.stderr)
            return 1
        synchronizer.start_credential_refresh(settings.token_refresh_seconds)
        while synchronizer.status is SyncStatus.LIVE:
            await asyncio.sleep(0.5)
        print(synchronizer.error or "Session closed", file=sys.stderr)
        return 1
    finally:
        await synchronizer.close()
        await transport.close()
        await store.aclose()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=load_client_settings().log_level)

    server_process: subprocess.Popen[str] | None = None
    if args.start_server:
        server_process = maybe_start_server(args.server)
        if server_process is None:
            print("Server could not be started.", file=sys.stderr)
            return 1
    elif not wait_for_server(args.server):
        print("Server unreachable. Use --start-server or run uvicorn manually.", file=sys.stderr)
        return 1

    try:
        return asyncio.run(follow_session(args.server, args.session_id, args.token))
    except KeyboardInterrupt:
        return 0
    finally:
        if server_process is not None:
            server_process.terminate()


if __name__ == "__main__":
    raise SystemExit(main())
