from __future__ import annotations

import pytest
from rich.console import Console
from typer.testing import CliRunner

from bastion_runwatch.cli import app
from bastion_runwatch.cli.commands import _validate_level, watch_finished
from bastion_runwatch.cli.errors import InvalidLevelError
from bastion_runwatch.cli.formatting import (
    connection_label,
    follow_label,
    format_timestamp,
    render_detail,
)
from bastion_runwatch.events import Event, RunStatusSnapshot
from bastion_runwatch.follow import DisabledReason, FollowState
from bastion_runwatch.orchestrator import RunDetailView, TargetKind
from bastion_runwatch.progress import ProgressSnapshot, derive_progress
from bastion_runwatch.stream import StreamState
from bastion_runwatch.summary import parse_run_summary


def _view(**overrides: object) -> RunDetailView:
    events = [
        Event(sequence=1, timestamp=0, kind="scan", message="scanning [/data]"),
        Event(sequence=2, timestamp=60, level="error", kind="upload", message="upload failed"),
    ]
    fields: dict[str, object] = {
        "target_id": "run_1",
        "target_kind": TargetKind.RUN,
        "status": RunStatusSnapshot(id="run_1", status="running", started_at=0),
        "connection": StreamState.LIVE,
        "reconnect_countdown": None,
        "follow": FollowState(True, DisabledReason.NONE, 0),
        "events": events,
        "total_events": 2,
        "kinds": ["scan", "upload"],
        "progress": derive_progress(
            ProgressSnapshot.from_dict({"stage": "packaging", "done": {"bytes": 1}, "total": {"bytes": 2}}),
            events,
            run_status="running",
        ),
        "operation_progress": None,
        "backfill_error": None,
        "polling": True,
    }
    fields.update(overrides)
    return RunDetailView(**fields)


def _render_text(renderable: object) -> str:
    console = Console(record=True, width=140, color_system=None)
    console.print(renderable)
    return console.export_text()


def test_connection_label_includes_countdown() -> None:
    assert connection_label(StreamState.LIVE) == "live"
    assert connection_label(StreamState.RECONNECTING, 4) == "reconnecting in 4s"
    assert connection_label(StreamState.RECONNECTING) == "reconnecting"


def test_follow_label_reports_unseen_events() -> None:
    assert follow_label(FollowState(True, DisabledReason.NONE, 0)) == "following latest"
    assert follow_label(FollowState(False, DisabledReason.AUTO, 1)) == "scrolled away · 1 new event"
    assert follow_label(FollowState(False, DisabledReason.MANUAL, 3)) == "paused · 3 new events"
    assert follow_label(FollowState(False, DisabledReason.MANUAL, 0)) == "paused"


def test_format_timestamp_is_utc() -> None:
    assert format_timestamp(0) == "1970-01-01 00:00:00"
    assert format_timestamp(None) == "-"


def test_render_detail_shows_header_progress_and_events() -> None:
    text = _render_text(render_detail(_view()))

    assert "run_1" in text
    assert "running" in text
    assert "feed: live" in text
    assert "28%" in text
    assert "50%" in text
    assert "scanning [/data]" in text
    assert "Events (2/2)" in text
    assert "following latest" in text


def test_render_detail_tail_limits_rows() -> None:
    text = _render_text(render_detail(_view(), tail=1))
    assert "upload failed" in text
    assert "scanning" not in text.split("Events")[1]


def test_render_detail_shows_backfill_error() -> None:
    text = _render_text(render_detail(_view(backfill_error="hub busy (HTTP 503)")))
    assert "event history unavailable: hub busy (HTTP 503)" in text


def _consistency(changed: int, read_error: int, sample: list[dict[str, str]] | None = None) -> dict:
    return {
        "filesystem": {
            "consistency": {
                "v": 1,
                "changed_total": changed,
                "replaced_total": 0,
                "deleted_total": 0,
                "read_error_total": read_error,
                "sample_truncated": False,
                "sample": sample or [],
            }
        }
    }


def test_render_detail_shows_source_changed_badge() -> None:
    summary = parse_run_summary(
        _consistency(2, 1, [{"path": "a.txt", "reason": "mtime_changed"}])
    )
    text = _render_text(render_detail(_view(summary=summary, first_consistency_seq=7)))

    assert "source changed: 3" in text
    assert "changed 2, replaced 0, deleted 0, read errors 1" in text
    assert "a.txt" in text and "mtime_changed" in text
    assert "first source_consistency event: #7" in text


def test_render_detail_hides_badge_when_totals_are_zero() -> None:
    summary = parse_run_summary(_consistency(0, 0))
    text = _render_text(render_detail(_view(summary=summary)))

    assert "source changed" not in text
    assert "Summary" not in text


def test_watch_finished_requires_quiet_terminal_state() -> None:
    assert not watch_finished(_view())
    done = RunStatusSnapshot(id="run_1", status="success")
    assert not watch_finished(_view(status=done, polling=False))
    assert watch_finished(_view(status=done, polling=False, connection=StreamState.DISCONNECTED))
    assert watch_finished(_view(status=None, polling=False))


def test_validate_level() -> None:
    assert _validate_level(None) is None
    assert _validate_level(" ERROR ") == "error"
    with pytest.raises(InvalidLevelError):
        _validate_level("fatal")


def test_events_command_without_hub_url_exits(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv("BASTION_HUB_URL", raising=False)
    monkeypatch.delenv("BASTION_RUNWATCH_CONFIG", raising=False)
    monkeypatch.setattr("bastion_runwatch.config.DEFAULT_CONFIG_FILE", tmp_path / "absent.yaml")

    result = CliRunner().invoke(app, ["events", "run_1"])

    assert result.exit_code == 1
    assert "Missing hub URL" in result.output
