import io

from tabletop.console.launcher import ActivityPrinter, parse_args
from tabletop.realtime.records import SessionState


def test_parse_args_reads_token_from_env(monkeypatch) -> None:
    monkeypatch.setenv("TABLETOP_TOKEN", "tok-env")
    monkeypatch.setenv("TABLETOP_API_URL", "http://127.0.0.1:9000")

    args = parse_args(["--session-id", "s1"])

    assert args.session_id == "s1"
    assert args.token == "tok-env"
    assert args.server == "http://127.0.0.1:9000"
    assert args.start_server is False


def test_activity_printer_prints_only_new_lines() -> None:
    stream = io.StringIO()
    printer = ActivityPrinter(stream)

    printer(SessionState(session_id="s1", activity_log=("Battle begins",)))
    printer(SessionState(session_id="s1", activity_log=("Battle begins",)))
    printer(SessionState(session_id="s1", activity_log=("Battle begins", "Ayla moved to C4")))
    printer(SessionState(session_id="s2", activity_log=()))
    printer(SessionState(session_id="s2", activity_log=("Fresh start",)))

    assert stream.getvalue().splitlines() == ["Battle begins", "Ayla moved to C4", "Fresh start"]
