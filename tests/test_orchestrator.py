from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from bastion_runwatch.api import HubClient, StaticSessionProvider
from bastion_runwatch.config import RunwatchConfig
from bastion_runwatch.orchestrator import RunDetailOrchestrator, TargetKind
from bastion_runwatch.stream import StreamState


class FakeConnection:
    def __init__(self) -> None:
        self._frames: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False

    def push(self, raw: str) -> None:
        self._frames.put_nowait(raw)

    def end(self) -> None:
        self._frames.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            raw = await self._frames.get()
            if raw is None:
                return
            yield raw

    async def close(self) -> None:
        self.closed = True
        self.end()


class FakeTransport:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.connections: list[FakeConnection] = []

    async def connect(self, url: str, headers: dict[str, str]) -> FakeConnection:
        self.calls.append((url, headers))
        conn = FakeConnection()
        self.connections.append(conn)
        return conn


def _event(owner: str, seq: int, *, kind: str = "log", message: str = "") -> dict[str, Any]:
    return {"run_id": owner, "seq": seq, "ts": 100 + seq, "level": "info", "kind": kind, "message": message or f"{owner}-{seq}"}


async def _fast_sleep(delay: float) -> None:
    await asyncio.sleep(0)


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def _orchestrator(handler, transport: FakeTransport, **config: Any) -> RunDetailOrchestrator:
    client = HubClient(
        "http://hub.test",
        session=StaticSessionProvider("tok"),
        transport=httpx.MockTransport(handler),
    )
    settings = RunwatchConfig(hub_url="http://hub.test", poll_interval_s=0.01, **config)
    return RunDetailOrchestrator(client, config=settings, transport=transport, sleep=_fast_sleep)


@pytest.mark.asyncio
async def test_open_backfills_then_streams_from_high_water_mark() -> None:
    status_calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal status_calls
        path = request.url.path
        if path == "/api/runs/run_1/events":
            return httpx.Response(200, json=[_event("run_1", s) for s in (1, 2, 3)])
        if path == "/api/runs/run_1":
            status_calls += 1
            done = status_calls >= 3
            return httpx.Response(
                200,
                json={
                    "id": "run_1",
                    "status": "success" if done else "running",
                    "started_at": 100,
                    "ended_at": 110 if done else None,
                    "progress": {"stage": "complete" if done else "packaging", "ts": 105},
                },
            )
        return httpx.Response(404, json={"message": "not found"})

    transport = FakeTransport()
    orchestrator = _orchestrator(handler, transport)
    notifications: list[int] = []
    orchestrator.subscribe(lambda orch: notifications.append(orch.buffer.high_water_mark))

    await orchestrator.open("run_1")
    await _eventually(lambda: orchestrator.connection_state is StreamState.LIVE)

    url, headers = transport.calls[0]
    assert url == "ws://hub.test/api/runs/run_1/events/ws?after_seq=3"
    assert headers == {"Origin": "http://hub.test", "Cookie": "bastion_session=tok"}

    conn = transport.connections[0]
    conn.push(json.dumps(_event("run_1", 3)))
    conn.push(json.dumps(_event("run_1", 4, kind="complete")))
    await _eventually(lambda: orchestrator.view().total_events == 4)

    await _eventually(lambda: not orchestrator.polling)
    view = orchestrator.view()
    assert view.status is not None and view.status.status == "success"
    assert view.target_kind is TargetKind.RUN
    assert view.progress is not None and view.progress.display_stage == "complete"
    assert [e.sequence for e in view.events] == [1, 2, 3, 4]
    assert view.kinds == ["complete", "log"]
    assert status_calls == 3

    # finished runs are not reconnected when the hub closes the feed
    conn.end()
    await _eventually(lambda: orchestrator.connection_state is StreamState.DISCONNECTED)
    await asyncio.sleep(0.01)
    assert len(transport.calls) == 1
    assert notifications

    await orchestrator.close()
    assert orchestrator.target_id is None
    assert orchestrator.view().total_events == 0


@pytest.mark.asyncio
async def test_switching_runs_discards_stale_backfill() -> None:
    gate = asyncio.Event()
    requested_a = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/runs/a/events":
            requested_a.set()
            await gate.wait()
            return httpx.Response(200, json=[_event("a", s) for s in (1, 2, 3, 4, 5)])
        if path == "/api/runs/b/events":
            return httpx.Response(200, json=[_event("b", 1)])
        if path in ("/api/runs/a", "/api/runs/b"):
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[1], "status": "success"})
        return httpx.Response(404)

    transport = FakeTransport()
    orchestrator = _orchestrator(handler, transport)

    opening_a = asyncio.create_task(orchestrator.open("a"))
    await requested_a.wait()
    await orchestrator.open("b")
    gate.set()
    await opening_a
    await _eventually(lambda: len(transport.calls) == 1)

    view = orchestrator.view()
    assert view.target_id == "b"
    assert [e.message for e in view.events] == ["b-1"]
    assert [url for url, _ in transport.calls] == [
        "ws://hub.test/api/runs/b/events/ws?after_seq=1"
    ]

    await orchestrator.close()


@pytest.mark.asyncio
async def test_polling_gives_up_after_repeated_failures(caplog: pytest.LogCaptureFixture) -> None:
    status_calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal status_calls
        if request.url.path == "/api/runs/run_1/events":
            return httpx.Response(200, json=[])
        status_calls += 1
        return httpx.Response(500, json={"message": "boom"}, headers={"x-request-id": "r1"})

    transport = FakeTransport()
    orchestrator = _orchestrator(handler, transport, max_poll_failures=3)

    with caplog.at_level(logging.WARNING, logger="bastion_runwatch.orchestrator"):
        await orchestrator.open("run_1")
        await _eventually(lambda: not orchestrator.polling)

    await _eventually(lambda: len(transport.calls) == 1)
    assert status_calls == 3
    assert orchestrator.view().status is None
    assert any("Giving up polling" in record.getMessage() for record in caplog.records)
    assert transport.calls[0][0].endswith("after_seq=0")

    await orchestrator.close()


@pytest.mark.asyncio
async def test_backfill_failure_is_reported_and_stream_still_starts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/events"):
            return httpx.Response(503, json={"message": "hub busy"})
        return httpx.Response(200, json={"id": "run_1", "status": "running"})

    transport = FakeTransport()
    orchestrator = _orchestrator(handler, transport)

    await orchestrator.open("run_1")
    await _eventually(lambda: len(transport.calls) == 1)

    view = orchestrator.view()
    assert view.backfill_error is not None and "hub busy" in view.backfill_error
    assert transport.calls[0][0].endswith("after_seq=0")
    assert view.polling

    await orchestrator.close()
    assert not orchestrator.polling


@pytest.mark.asyncio
async def test_operation_events_are_polled_without_live_feed() -> None:
    event_calls = 0
    status_calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal event_calls, status_calls
        path = request.url.path
        if path == "/api/operations/op_1/events":
            event_calls += 1
            count = min(event_calls + 1, 4)
            return httpx.Response(
                200,
                json=[{"op_id": "op_1", "seq": s, "ts": 100 + s, "kind": "progress_snapshot"} for s in range(1, count + 1)],
            )
        if path == "/api/operations/op_1":
            status_calls += 1
            done = status_calls >= 3
            return httpx.Response(
                200,
                json={
                    "id": "op_1",
                    "status": "success" if done else "running",
                    "progress": {"stage": "restore", "done": {"bytes": 50}, "total": {"bytes": 100}},
                },
            )
        return httpx.Response(404)

    transport = FakeTransport()
    orchestrator = _orchestrator(handler, transport)

    await orchestrator.open_operation("op_1")
    await _eventually(lambda: not orchestrator.polling)

    view = orchestrator.view()
    assert view.target_kind is TargetKind.OPERATION
    assert [e.sequence for e in view.events] == [1, 2, 3, 4]
    assert view.connection is StreamState.DISCONNECTED
    assert view.operation_progress is not None and view.operation_progress.percent == 100.0
    assert view.progress is None
    assert transport.calls == []

    await orchestrator.close()


@pytest.mark.asyncio
async def test_filters_and_follow_flow_into_view() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/events"):
            return httpx.Response(
                200,
                json=[
                    _event("run_1", 1, kind="scan", message="scanning"),
                    _event("run_1", 2, kind="upload", message="upload failed"),
                ],
            )
        return httpx.Response(200, json={"id": "run_1", "status": "failed"})

    transport = FakeTransport()
    orchestrator = _orchestrator(handler, transport)
    await orchestrator.open("run_1")

    orchestrator.set_filters(query="FAILED")
    view = orchestrator.view()
    assert [e.sequence for e in view.events] == [2]
    assert view.total_events == 2
    assert view.filters.query == "FAILED"

    orchestrator.set_follow(False)
    assert not orchestrator.view().follow.enabled
    orchestrator.jump_to_latest()
    assert orchestrator.view().follow.enabled

    await orchestrator.close()


@pytest.mark.asyncio
async def test_run_summary_and_first_consistency_event_flow_into_view() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/events"):
            return httpx.Response(
                200,
                json=[
                    _event("run_1", 1, kind="scan"),
                    _event("run_1", 2, kind="source_consistency", message="a.txt changed"),
                    _event("run_1", 3, kind="source_consistency", message="b.txt changed"),
                ],
            )
        return httpx.Response(
            200,
            json={
                "id": "run_1",
                "status": "success",
                "summary": {
                    "filesystem": {
                        "consistency": {
                            "changed_total": 2,
                            "read_error_total": 1,
                            "sample": [{"path": "a.txt", "reason": "mtime_changed"}],
                        }
                    }
                },
            },
        )

    transport = FakeTransport()
    orchestrator = _orchestrator(handler, transport)
    await orchestrator.open("run_1")

    orchestrator.set_filters(kind="scan")
    view = orchestrator.view()
    assert view.summary is not None and view.summary.consistency_changed_total == 3
    assert view.first_consistency_seq == 2
    assert [e.sequence for e in view.events] == [1]

    await orchestrator.close()
    assert orchestrator.view().summary is None
