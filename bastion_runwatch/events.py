"""Run/operation event model and status snapshots."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .errors import MalformedEventError


class EventLevel(StrEnum):
    """Severity levels emitted by the hub."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class RunStatus(StrEnum):
    """Lifecycle status of a backup run."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    REJECTED = "rejected"


class OperationStatus(StrEnum):
    """Lifecycle status of a restore/verify operation."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


NON_TERMINAL_STATUSES = frozenset({"queued", "running"})
FAILED_STATUSES = frozenset({"failed", "rejected"})


def is_terminal_status(status: str | None) -> bool:
    """Return True when a run/operation status will no longer change."""
    if not status:
        return False
    return status not in NON_TERMINAL_STATUSES


def _require_int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    # bool is an int subclass; the hub never sends booleans here
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventError(f"event field '{key}' must be an integer, got {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class Event:
    """One immutable fact emitted by a run or operation."""

    sequence: int
    timestamp: int
    level: str = EventLevel.INFO.value
    kind: str = ""
    message: str = ""
    fields: Any = None
    owner_id: str | None = None  # run_id or op_id

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        """Build an event from a decoded wire payload.

        Raises MalformedEventError when ``seq`` or ``ts`` are missing or
        not integers.
        """
        if not isinstance(data, dict):
            raise MalformedEventError(f"event payload must be an object, got {type(data).__name__}")
        owner = data.get("run_id", data.get("op_id"))
        return cls(
            sequence=_require_int(data, "seq"),
            timestamp=_require_int(data, "ts"),
            level=str(data.get("level") or EventLevel.INFO.value),
            kind=str(data.get("kind") or ""),
            message=str(data.get("message") or ""),
            fields=data.get("fields"),
            owner_id=str(owner) if owner is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.sequence,
            "ts": self.timestamp,
            "level": self.level,
            "kind": self.kind,
            "message": self.message,
            "fields": self.fields,
        }


def parse_event_message(raw: str | bytes) -> Event:
    """Decode one live-feed frame into an Event."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
        raise MalformedEventError(f"event frame is not valid JSON: {exc}") from exc
    return Event.from_dict(data)


def parse_event_list(payload: Any) -> list[Event]:
    """Parse a REST backfill response, skipping malformed entries."""
    if not isinstance(payload, list):
        raise MalformedEventError("event list response must be a JSON array")
    events: list[Event] = []
    for item in payload:
        try:
            events.append(Event.from_dict(item))
        except MalformedEventError:
            continue
    return events


@dataclass(slots=True)
class RunStatusSnapshot:
    """Point-in-time status of a run or operation from the polling API."""

    id: str
    status: str
    started_at: int | None = None
    ended_at: int | None = None
    progress: dict[str, Any] | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunStatusSnapshot:
        known = {"id", "status", "started_at", "ended_at", "progress", "error"}
        progress = data.get("progress")
        return cls(
            id=str(data.get("id", "")),
            status=str(data.get("status", "")),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            progress=progress if isinstance(progress, dict) else None,
            error=data.get("error"),
            extra={k: v for k, v in data.items() if k not in known},
        )


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


def filter_events(
    events: list[Event],
    *,
    query: str | None = None,
    level: str | None = None,
    kind: str | None = None,
) -> list[Event]:
    """Filter events by level, exact kind and a case-insensitive text query.

    The query matches against both the message and the kind.
    """
    q = _norm(query)
    wanted_level = _norm(level)
    wanted_kind = (kind or "").strip()

    if not q and not wanted_level and not wanted_kind:
        return events

    result: list[Event] = []
    for event in events:
        if wanted_level and _norm(event.level) != wanted_level:
            continue
        if wanted_kind and event.kind != wanted_kind:
            continue
        if q and q not in _norm(event.message) and q not in _norm(event.kind):
            continue
        result.append(event)
    return result


def unique_event_kinds(events: list[Event]) -> list[str]:
    """Return the sorted set of non-empty kinds."""
    return sorted({event.kind.strip() for event in events if event.kind.strip()})


def find_first_event_seq(events: list[Event], predicate: Callable[[Event], bool]) -> int | None:
    """Return the sequence of the first event matching ``predicate``."""
    for event in events:
        if predicate(event):
            return event.sequence
    return None
