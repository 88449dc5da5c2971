from __future__ import annotations

import pytest

from bastion_runwatch.errors import MalformedEventError
from bastion_runwatch.events import (
    Event,
    RunStatusSnapshot,
    filter_events,
    find_first_event_seq,
    is_terminal_status,
    parse_event_list,
    parse_event_message,
    unique_event_kinds,
)


def _event(seq: int, *, level: str = "info", kind: str = "log", message: str = "") -> Event:
    return Event(sequence=seq, timestamp=seq, level=level, kind=kind, message=message)


def test_event_from_dict_reads_wire_fields() -> None:
    event = Event.from_dict(
        {
            "run_id": "run_1",
            "seq": 7,
            "ts": 1700000000,
            "level": "warn",
            "kind": "upload",
            "message": "slow upload",
            "fields": {"bytes": 10},
        }
    )

    assert event.sequence == 7
    assert event.timestamp == 1700000000
    assert event.level == "warn"
    assert event.kind == "upload"
    assert event.fields == {"bytes": 10}
    assert event.owner_id == "run_1"


def test_event_from_dict_uses_op_id_for_operations() -> None:
    event = Event.from_dict({"op_id": "op_9", "seq": 1, "ts": 1})
    assert event.owner_id == "op_9"
    assert event.level == "info"


@pytest.mark.parametrize(
    "payload",
    [
        {"ts": 1},
        {"seq": 1},
        {"seq": "1", "ts": 1},
        {"seq": True, "ts": 1},
        {"seq": 1.5, "ts": 1},
        ["not", "an", "object"],
    ],
)
def test_event_from_dict_rejects_missing_or_non_integer_fields(payload: object) -> None:
    with pytest.raises(MalformedEventError):
        Event.from_dict(payload)


def test_parse_event_message_rejects_invalid_json() -> None:
    with pytest.raises(MalformedEventError):
        parse_event_message("{not json")


def test_parse_event_list_skips_malformed_entries() -> None:
    events = parse_event_list([{"seq": 1, "ts": 1}, {"seq": "x", "ts": 2}, {"seq": 3, "ts": 3}])
    assert [e.sequence for e in events] == [1, 3]


def test_parse_event_list_requires_array() -> None:
    with pytest.raises(MalformedEventError):
        parse_event_list({"events": []})


def test_terminal_statuses() -> None:
    assert not is_terminal_status(None)
    assert not is_terminal_status("queued")
    assert not is_terminal_status("running")
    assert is_terminal_status("success")
    assert is_terminal_status("failed")
    assert is_terminal_status("rejected")


def test_run_status_snapshot_keeps_unknown_fields() -> None:
    snapshot = RunStatusSnapshot.from_dict(
        {"id": "run_1", "status": "running", "started_at": 10, "progress": "bad", "agent": "a1"}
    )
    assert snapshot.started_at == 10
    assert snapshot.progress is None
    assert snapshot.extra == {"agent": "a1"}
    assert not snapshot.is_terminal


def test_filter_events_by_level_kind_and_query() -> None:
    events = [
        _event(1, kind="scan", message="Scanning /data"),
        _event(2, level="error", kind="upload", message="Upload FAILED"),
        _event(3, kind="upload", message="chunk 1"),
    ]

    assert [e.sequence for e in filter_events(events, level="ERROR")] == [2]
    assert [e.sequence for e in filter_events(events, kind="upload")] == [2, 3]
    assert [e.sequence for e in filter_events(events, query="failed")] == [2]
    # query also matches the kind
    assert [e.sequence for e in filter_events(events, query="SCAN")] == [1]
    assert filter_events(events) == events


def test_unique_event_kinds_sorted_and_non_empty() -> None:
    events = [_event(1, kind="upload"), _event(2, kind=""), _event(3, kind="scan"), _event(4, kind="upload")]
    assert unique_event_kinds(events) == ["scan", "upload"]


def test_find_first_event_seq() -> None:
    events = [_event(1, level="info"), _event(2, level="error"), _event(3, level="error")]
    assert find_first_event_seq(events, lambda e: e.level == "error") == 2
    assert find_first_event_seq(events, lambda e: e.kind == "nope") is None
