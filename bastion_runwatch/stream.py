"""Reconnecting live subscription to a run's event feed."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from .buffer import EventLogBuffer
from .errors import MalformedEventError
from .events import Event, parse_event_message
from .transport import EventConnection, EventTransport

logger = logging.getLogger(__name__)

DEFAULT_MAX_DELAY_S = 30.0
DEFAULT_MIN_DELAY_S = 1.0

UrlFactory = Callable[[str, int], str]
HeadersFactory = Callable[[], dict[str, str]]
EventListener = Callable[[Event], None]
StateListener = Callable[["StreamState"], None]
SleepFn = Callable[[float], Awaitable[Any]]


class StreamState(StrEnum):
    """Connection state shown next to the event list."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    ERROR = "error"


def reconnect_delay(
    attempt: int,
    *,
    max_delay: float = DEFAULT_MAX_DELAY_S,
    min_delay: float = DEFAULT_MIN_DELAY_S,
) -> float:
    """Backoff for 0-indexed ``attempt``: 1, 2, 4, 8, 16, 30, 30, ..."""
    exp = 2.0 ** min(max(attempt, 0), 32)
    return min(max_delay, max(min_delay, exp))


class ReconnectingEventStream:
    """One logical subscription to ``events after seq N`` for a run.

    All transitions happen on a single actor task that consumes commands
    (start, stop, manual reconnect, timer ticks) and transport callbacks
    (open, message, error, close) from one queue. Every connection attempt
    gets an id; callbacks carrying a superseded id are ignored, which keeps
    manual and automatic reconnects from racing each other.
    """

    def __init__(
        self,
        buffer: EventLogBuffer,
        transport: EventTransport,
        url_factory: UrlFactory,
        *,
        headers_factory: HeadersFactory | None = None,
        on_event: EventListener | None = None,
        on_state: StateListener | None = None,
        max_delay_s: float = DEFAULT_MAX_DELAY_S,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._buffer = buffer
        self._transport = transport
        self._url_factory = url_factory
        self._headers_factory = headers_factory or dict
        self._on_event = on_event
        self._on_state = on_state
        self._max_delay_s = max_delay_s
        self._sleep = sleep
        self._clock = clock

        self._state = StreamState.DISCONNECTED
        self._run_id: str | None = None
        self._attempts = 0
        self._attempt_id = 0
        self._timer_id = 0
        self._allow_reconnect = True
        self._reconnect_at: float | None = None
        self._last_cursor: int | None = None

        self._queue: asyncio.Queue[tuple[Any, ...]] | None = None
        self._actor: asyncio.Task[None] | None = None
        self._pump: asyncio.Task[None] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._conn: EventConnection | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def attempts(self) -> int:
        """Reconnect attempts since the last successful open."""
        return self._attempts

    @property
    def last_cursor(self) -> int | None:
        """``after_seq`` used by the most recent connection attempt."""
        return self._last_cursor

    @property
    def running(self) -> bool:
        return self._actor is not None and not self._actor.done()

    def reconnect_countdown(self) -> int | None:
        """Whole seconds until the pending reconnect, for display."""
        if self._state is not StreamState.RECONNECTING or self._reconnect_at is None:
            return None
        return max(0, math.ceil(self._reconnect_at - self._clock()))

    async def start(self, run_id: str, after_seq: int | None = None) -> None:
        """Begin streaming ``run_id`` from ``after_seq`` (default: buffer mark)."""
        if self.running:
            await self.stop()
        self._run_id = run_id
        self._attempts = 0
        self._allow_reconnect = True
        self._queue = asyncio.Queue()
        self._actor = asyncio.create_task(self._run(), name=f"run-events:{run_id}")
        cursor = self._buffer.high_water_mark if after_seq is None else after_seq
        self._post(("start", cursor))

    async def stop(self) -> None:
        """Cancel timers, close the transport and go ``disconnected``. Idempotent."""
        actor = self._actor
        if actor is None or actor.done():
            self._actor = None
            await self._teardown()
            self._set_state(StreamState.DISCONNECTED)
            return
        self._post(("stop",))
        try:
            await actor
        finally:
            self._actor = None

    def reconnect_now(self) -> None:
        """User-triggered reconnect: reset backoff and connect immediately."""
        if self.running:
            self._post(("reconnect_now",))

    def finish(self) -> None:
        """Stop reconnecting after the current connection closes."""
        self._allow_reconnect = False

    def _post(self, command: tuple[Any, ...]) -> None:
        if self._queue is not None:
            self._queue.put_nowait(command)

    def _set_state(self, state: StreamState) -> None:
        if state is self._state:
            return
        logger.debug("Run %s live feed: %s -> %s", self._run_id, self._state, state)
        self._state = state
        if self._on_state is not None:
            self._on_state(state)

    async def _run(self) -> None:
        assert self._queue is not None
        try:
            while True:
                command = await self._queue.get()
                name = command[0]
                if name == "stop":
                    break
                await self._handle(name, command[1:])
        finally:
            await self._teardown()
            self._set_state(StreamState.DISCONNECTED)

    async def _handle(self, name: str, args: tuple[Any, ...]) -> None:
        if name == "start":
            await self._connect(args[0])
        elif name == "reconnect_now":
            await self._teardown()
            self._attempts = 0
            await self._connect(self._buffer.high_water_mark)
        elif name == "timer":
            if args[0] == self._timer_id and self._state is StreamState.RECONNECTING:
                self._timer = None
                if not self._allow_reconnect:
                    self._reconnect_at = None
                    self._set_state(StreamState.DISCONNECTED)
                    return
                await self._connect(self._buffer.high_water_mark)
        elif args and args[0] != self._attempt_id:
            # callback from a superseded connection
            if name == "open":
                await self._close_quietly(args[1])
        elif name == "open":
            self._conn = args[1]
            self._attempts = 0
            self._reconnect_at = None
            self._set_state(StreamState.LIVE)
        elif name == "message":
            self._accept(args[1])
        elif name == "error":
            logger.warning("Run %s live feed error: %s", self._run_id, args[1])
            if self._state in (StreamState.CONNECTING, StreamState.LIVE):
                self._set_state(StreamState.ERROR)
        elif name == "close":
            self._pump = None
            await self._close_conn()
            self._on_closed()

    def _accept(self, raw: str | bytes) -> None:
        try:
            event = parse_event_message(raw)
        except MalformedEventError as exc:
            logger.debug("Dropping malformed frame on run %s: %s", self._run_id, exc)
            return
        if not self._buffer.try_append(event):
            return
        if self._on_event is not None:
            self._on_event(event)

    def _on_closed(self) -> None:
        if not self._allow_reconnect:
            self._set_state(StreamState.DISCONNECTED)
            return
        delay = reconnect_delay(self._attempts, max_delay=self._max_delay_s)
        self._attempts += 1
        self._timer_id += 1
        self._reconnect_at = self._clock() + delay
        logger.info(
            "Run %s live feed closed; reconnecting in %.0fs (attempt %d)",
            self._run_id,
            delay,
            self._attempts,
        )
        self._set_state(StreamState.RECONNECTING)
        self._timer = asyncio.create_task(self._fire_timer(self._timer_id, delay))

    async def _fire_timer(self, timer_id: int, delay: float) -> None:
        await self._sleep(delay)
        self._post(("timer", timer_id))

    async def _connect(self, after_seq: int) -> None:
        assert self._run_id is not None
        self._attempt_id += 1
        self._last_cursor = after_seq
        self._reconnect_at = None
        url = self._url_factory(self._run_id, after_seq)
        self._set_state(StreamState.CONNECTING)
        self._pump = asyncio.create_task(
            self._read(self._attempt_id, url, self._headers_factory())
        )

    async def _read(self, attempt_id: int, url: str, headers: dict[str, str]) -> None:
        try:
            conn = await self._transport.connect(url, headers)
        except Exception as exc:  # any transport failure is recoverable
            self._post(("error", attempt_id, exc))
            self._post(("close", attempt_id))
            return
        self._post(("open", attempt_id, conn))
        try:
            async for raw in conn:
                self._post(("message", attempt_id, raw))
        except Exception as exc:
            self._post(("error", attempt_id, exc))
        self._post(("close", attempt_id))

    async def _close_conn(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            await self._close_quietly(conn)

    async def _close_quietly(self, conn: EventConnection) -> None:
        try:
            await conn.close()
        except Exception as exc:
            logger.debug("Closing live feed for run %s failed: %s", self._run_id, exc)

    async def _teardown(self) -> None:
        # Invalidate in-flight callbacks before cancelling their producers.
        self._attempt_id += 1
        self._timer_id += 1
        self._reconnect_at = None
        for task in (self._timer, self._pump):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer = None
        self._pump = None
        await self._close_conn()
