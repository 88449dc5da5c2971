"""Per-run view-model: backfill, live feed, polling and derived progress."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from .api import HubClient
from .buffer import EventLogBuffer
from .config import RunwatchConfig
from .errors import ApiError, MalformedEventError
from .events import (
    Event,
    RunStatusSnapshot,
    filter_events,
    find_first_event_seq,
    unique_event_kinds,
)
from .follow import FollowScrollController, FollowState
from .latest import LatestRequest, LatestRequestHandle, StaleRequestError
from .progress import (
    OperationProgressView,
    ProgressSnapshot,
    ProgressView,
    derive_operation_progress,
    derive_progress,
    update_peak_rate,
)
from .stream import ReconnectingEventStream, StreamState
from .summary import SOURCE_CONSISTENCY_KIND, RunSummary, parse_run_summary
from .transport import EventTransport, WebsocketTransport

logger = logging.getLogger(__name__)

# Recoverable fetch failures; anything else propagates.
FETCH_ERRORS = (ApiError, httpx.HTTPError, MalformedEventError, ValueError)

Listener = Callable[["RunDetailOrchestrator"], None]


class TargetKind(StrEnum):
    RUN = "run"
    OPERATION = "operation"


@dataclass(frozen=True)
class EventFilters:
    query: str | None = None
    level: str | None = None
    kind: str | None = None


@dataclass(frozen=True)
class RunDetailView:
    """Immutable snapshot rendered by the presentation layer."""

    target_id: str | None
    target_kind: TargetKind | None
    status: RunStatusSnapshot | None
    connection: StreamState
    reconnect_countdown: int | None
    follow: FollowState
    events: list[Event]
    total_events: int
    kinds: list[str]
    progress: ProgressView | None
    operation_progress: OperationProgressView | None
    backfill_error: str | None
    polling: bool
    filters: EventFilters = field(default_factory=EventFilters)
    summary: RunSummary | None = None
    first_consistency_seq: int | None = None


class RunDetailOrchestrator:
    """Owns the lifecycle of one open run/operation detail view.

    ``open`` resets everything, seeds the buffer from the REST backfill,
    starts the live feed from the buffer's high-water mark and polls status
    while the target is still running. ``close`` (or opening another
    target) stops all of it; results from superseded requests are dropped.
    """

    def __init__(
        self,
        client: HubClient,
        *,
        config: RunwatchConfig | None = None,
        transport: EventTransport | None = None,
        follow: FollowScrollController | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._config = config or RunwatchConfig(hub_url=client.base_url)
        self._transport = transport or WebsocketTransport()
        self._sleep = sleep
        self._clock = clock
        self.follow = follow or FollowScrollController(
            threshold_px=self._config.follow_threshold_px,
            suppress_ms=self._config.follow_suppress_ms,
            clock=clock,
        )
        self.buffer = EventLogBuffer()
        self._requests = LatestRequest()
        self._listeners: list[Listener] = []

        self._target_id: str | None = None
        self._kind: TargetKind | None = None
        self._stream: ReconnectingEventStream | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._status: RunStatusSnapshot | None = None
        self._snapshot: ProgressSnapshot | None = None
        self._peak_rate: float | None = None
        self._backfill_error: str | None = None
        self._filters = EventFilters()

    # -- subscription ------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # -- lifecycle ---------------------------------------------------------

    @property
    def target_id(self) -> str | None:
        return self._target_id

    @property
    def connection_state(self) -> StreamState:
        return self._stream.state if self._stream else StreamState.DISCONNECTED

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def open(self, run_id: str) -> None:
        await self._open(run_id, TargetKind.RUN)

    async def open_operation(self, op_id: str) -> None:
        await self._open(op_id, TargetKind.OPERATION)

    async def close(self) -> None:
        """Stop the feed and polling and forget all per-target state."""
        self._requests.abort("closed")
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.stop()
        poll, self._poll_task = self._poll_task, None
        if poll is not None and not poll.done():
            poll.cancel()
            try:
                await poll
            except asyncio.CancelledError:
                pass
        had_target = self._target_id is not None
        self._target_id = None
        self._kind = None
        self._reset_state()
        if had_target:
            self._notify()

    def _reset_state(self) -> None:
        self.buffer.clear()
        self.follow.reset()
        self._status = None
        self._snapshot = None
        self._peak_rate = None
        self._backfill_error = None

    async def _open(self, target_id: str, kind: TargetKind) -> None:
        await self.close()
        handle = self._requests.next()
        self._target_id = target_id
        self._kind = kind
        self._notify()

        await self._backfill(handle)
        if handle.is_stale():
            return

        if kind is TargetKind.RUN:
            self._stream = ReconnectingEventStream(
                self.buffer,
                self._transport,
                self._client.run_events_ws_url,
                headers_factory=self._client.ws_headers,
                on_event=self._on_live_event,
                on_state=self._on_stream_state,
                max_delay_s=self._config.reconnect_max_delay_s,
                sleep=self._sleep,
                clock=self._clock,
            )
            await self._stream.start(target_id, self.buffer.high_water_mark)

        failures = 0
        try:
            terminal = await self._poll_once(handle)
        except StaleRequestError:
            return
        except FETCH_ERRORS as exc:
            logger.warning("Status fetch for %s %s failed: %s", kind, target_id, exc)
            terminal = False
            failures = 1
        if not terminal and not handle.is_stale():
            self._poll_task = asyncio.create_task(
                self._poll_loop(handle, failures), name=f"poll:{kind}:{target_id}"
            )

    async def _backfill(self, handle: LatestRequestHandle) -> None:
        assert self._target_id is not None
        if self._kind is TargetKind.RUN:
            fetch = self._client.list_run_events(self._target_id)
        else:
            fetch = self._client.list_operation_events(self._target_id)
        try:
            events = await handle.run(fetch)
        except StaleRequestError:
            return
        except FETCH_ERRORS as exc:
            self._backfill_error = str(exc)
            logger.warning("Event backfill for %s %s failed: %s", self._kind, self._target_id, exc)
            self._notify()
            return
        if len(self.buffer):
            accepted = sum(1 for event in events if self.buffer.try_append(event))
        else:
            self.buffer.replace_all(events)
            accepted = len(self.buffer)
        self.follow.on_events_appended(accepted)
        self._notify()

    async def _poll_loop(self, handle: LatestRequestHandle, failures: int = 0) -> None:
        max_failures = max(1, self._config.max_poll_failures)
        while failures < max_failures and not handle.is_stale():
            await self._sleep(self._config.poll_interval_s)
            if handle.is_stale():
                return
            try:
                terminal = await self._poll_once(handle)
            except StaleRequestError:
                return
            except FETCH_ERRORS as exc:
                failures += 1
                logger.warning(
                    "Status poll for %s %s failed (%d/%d): %s",
                    self._kind,
                    self._target_id,
                    failures,
                    max_failures,
                    exc,
                )
                continue
            failures = 0
            if terminal:
                break
        if failures >= max_failures:
            logger.warning("Giving up polling %s %s", self._kind, self._target_id)
        self._notify()

    async def _poll_once(self, handle: LatestRequestHandle) -> bool:
        """Refresh status (and operation events); return True once terminal."""
        assert self._target_id is not None
        if self._kind is TargetKind.RUN:
            status = await handle.run(self._client.get_run(self._target_id))
        else:
            status = await handle.run(self._client.get_operation(self._target_id))
            events = await handle.run(self._client.list_operation_events(self._target_id))
            accepted = sum(1 for event in events if self.buffer.try_append(event))
            self.follow.on_events_appended(accepted)
        self._apply_status(status)
        return status.is_terminal

    def _apply_status(self, status: RunStatusSnapshot) -> None:
        self._status = status
        snapshot = ProgressSnapshot.from_dict(status.progress)
        if snapshot is not None:
            self._snapshot = snapshot
            self._peak_rate = update_peak_rate(self._peak_rate, snapshot)
        if status.is_terminal and self._stream is not None:
            # the hub closes the feed shortly after a run ends
            self._stream.finish()
        self._notify()

    # -- stream callbacks --------------------------------------------------

    def _on_live_event(self, event: Event) -> None:
        self.follow.on_events_appended(1)
        self._notify()

    def _on_stream_state(self, state: StreamState) -> None:
        self._notify()

    # -- user actions ------------------------------------------------------

    def reconnect_now(self) -> None:
        if self._stream is not None:
            self._stream.reconnect_now()

    def set_follow(self, enabled: bool) -> None:
        self.follow.set_follow(enabled)
        self._notify()

    def jump_to_latest(self) -> None:
        self.follow.jump_to_latest()
        self._notify()

    def on_scroll(self, distance_from_bottom: float) -> None:
        before = self.follow.state
        self.follow.on_scroll(distance_from_bottom)
        if self.follow.state != before:
            self._notify()

    def set_filters(
        self, *, query: str | None = None, level: str | None = None, kind: str | None = None
    ) -> None:
        self._filters = EventFilters(query=query, level=level, kind=kind)
        self._notify()

    # -- view --------------------------------------------------------------

    def view(self) -> RunDetailView:
        events = self.buffer.snapshot_ordered()
        status = self._status
        progress: ProgressView | None = None
        operation_progress: OperationProgressView | None = None
        summary: RunSummary | None = None
        first_consistency_seq: int | None = None
        if self._kind is TargetKind.RUN:
            if status is not None:
                summary = parse_run_summary(status.extra.get("summary"))
            first_consistency_seq = find_first_event_seq(
                events, lambda event: event.kind == SOURCE_CONSISTENCY_KIND
            )
            progress = derive_progress(
                self._snapshot,
                events,
                run_status=status.status if status else None,
                run_started_at=status.started_at if status else None,
                run_ended_at=status.ended_at if status else None,
                peak_rate_bps=self._peak_rate,
            )
        elif self._kind is TargetKind.OPERATION:
            operation_progress = derive_operation_progress(
                self._snapshot,
                events,
                status=status.status if status else None,
                started_at=status.started_at if status else None,
                ended_at=status.ended_at if status else None,
            )
        return RunDetailView(
            target_id=self._target_id,
            target_kind=self._kind,
            status=status,
            connection=self.connection_state,
            reconnect_countdown=self._stream.reconnect_countdown() if self._stream else None,
            follow=self.follow.state,
            events=filter_events(
                events,
                query=self._filters.query,
                level=self._filters.level,
                kind=self._filters.kind,
            ),
            total_events=len(events),
            kinds=unique_event_kinds(events),
            progress=progress,
            operation_progress=operation_progress,
            backfill_error=self._backfill_error,
            polling=self.polling,
            filters=self._filters,
            summary=summary,
            first_consistency_seq=first_consistency_seq,
        )
