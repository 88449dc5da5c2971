"""Latest-request-wins bookkeeping for refresh/open calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TypeVar

from .errors import RunwatchError

T = TypeVar("T")


class StaleRequestError(RunwatchError):
    """Raised when a request was superseded before its result was applied."""


@dataclass
class CancellationToken:
    """Cooperative cancellation token shared by a request and its issuer."""

    reason: str | None = None
    cancelled_at: datetime | None = None
    _cancelled: bool = False
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    def cancel(self, reason: str = "superseded") -> None:
        """Mark token as cancelled and cancel tracked tasks (idempotent)."""
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        self.cancelled_at = datetime.now(timezone.utc)
        for task in list(self._tasks):
            task.cancel()

    def is_cancelled(self) -> bool:
        return self._cancelled

    def track(self, task: asyncio.Task) -> None:
        if self._cancelled:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


@dataclass
class LatestRequestHandle:
    """One issued request: a generation number plus its cancellation token."""

    generation: int
    token: CancellationToken
    _owner: LatestRequest = field(repr=False)

    def is_stale(self) -> bool:
        return self.token.is_cancelled() or self._owner.generation != self.generation

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` as a cancellable task bound to this handle.

        Raises StaleRequestError if the handle was superseded, whether the
        work was cancelled midway or finished after the fact.
        """
        task = asyncio.ensure_future(awaitable)
        self.token.track(task)
        try:
            result = await task
        except asyncio.CancelledError:
            if task.cancelled() and self.is_stale():
                raise StaleRequestError(f"request {self.generation} superseded") from None
            raise
        if self.is_stale():
            raise StaleRequestError(f"request {self.generation} superseded")
        return result


class LatestRequest:
    """Issues monotonically numbered request handles.

    Taking a new handle aborts the previous one, so only the most recent
    open/refresh may apply its result.
    """

    def __init__(self) -> None:
        self.generation = 0
        self._current: CancellationToken | None = None

    def next(self) -> LatestRequestHandle:
        self.generation += 1
        self.abort()
        self._current = CancellationToken()
        return LatestRequestHandle(self.generation, self._current, self)

    def abort(self, reason: str = "superseded") -> None:
        if self._current is not None:
            self._current.cancel(reason)
            self._current = None
