import asyncio
import io
import logging

from rich.console import Console

import filmweb_export as fe
from conftest import make_record


def quiet_logging(tmp_path):
    return fe.LoggingRuntime(
        live_state=fe.LiveLogState(),
        event_buffer=fe.DashboardEventBuffer(max_lines=3),
        log_file_path=tmp_path / "export.log",
    )


def test_auth_failure_exits_with_one(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(fe, "configure_logging", lambda config: quiet_logging(tmp_path))

    def rejected(config, logging_runtime, console):
        raise fe.AuthInvalidated("settings page does not show a logged-in account")

    monkeypatch.setattr(fe, "run_app", rejected)
    assert fe.main(["-t", "a", "-s", "b", "-j", "c"]) == 1


def test_missing_credentials_exit_with_one(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    assert fe.main([]) == 1


def test_run_app_reviews_and_exports(monkeypatch, tmp_path, config):
    config["runtime"]["export_dir"] = str(tmp_path / "exports")

    good = make_record(source_id=1, title="Seksmisja", rating=fe.UserRating(8, False))
    good.match = fe.ResolvedMatch(fe.CONFIDENCE_CONFIRMED, fe.MatchCandidate("tt0086311", "Sexmission", 117))
    doubtful = make_record(source_id=2, title="Rejs", rating=fe.UserRating(6, True))
    doubtful.match = fe.ResolvedMatch(fe.CONFIDENCE_NEEDS_REVIEW, fe.MatchCandidate("tt0066292", "Rejs", 65))
    missing = make_record(source_id=3, title="Miś")
    missing.match = fe.ResolvedMatch(fe.CONFIDENCE_NOT_FOUND)

    async def fake_harvest(config, logging_runtime, console):
        await asyncio.sleep(0)
        return fe.PipelineResult(total_pages=1, units_enqueued=1, units_processed=1, records=[good, doubtful, missing])

    monkeypatch.setattr(fe, "harvest", fake_harvest)
    console = Console(file=io.StringIO(), width=200)
    assert fe.run_app(config, quiet_logging(tmp_path), console, decide=lambda record: True) == 0

    exports = tmp_path / "exports"
    assert "tt0086311" in (exports / "generic.csv").read_text(encoding="utf-8")
    assert "tt0066292" in (exports / "favorited.csv").read_text(encoding="utf-8")
    assert "Miś" in (exports / "not_found.csv").read_text(encoding="utf-8")
    assert "couldn't be found" in console.file.getvalue()


def test_dashboard_buffer_collapses_repeats():
    buffer = fe.DashboardEventBuffer(max_lines=3)
    buffer.add(level="warning", message="a   b", now_ts=1)
    buffer.add(level="WARNING", message="a b", now_ts=2)
    buffer.add(level="ERROR", message="c", now_ts=3)
    events = buffer.snapshot()
    assert [(event.message, event.count) for event in events] == [("a b", 2), ("c", 1)]


def test_console_handler_is_silent_while_live():
    state = fe.LiveLogState()
    stream = io.StringIO()
    handler = fe.LiveAwareConsoleHandler(live_state=state, allow_while_live=False)
    handler.setStream(stream)
    record = logging.makeLogRecord({"msg": "hello", "levelno": logging.WARNING, "levelname": "WARNING"})

    state.set_live_active(True)
    handler.emit(record)
    assert stream.getvalue() == ""

    state.set_live_active(False)
    handler.emit(record)
    assert "hello" in stream.getvalue()
