"""Ordered, deduplicated event log for a single run or operation."""

from __future__ import annotations

import logging

from .events import Event

logger = logging.getLogger(__name__)


class EventLogBuffer:
    """Append-only event store guarded by a monotonic high-water mark.

    Events from the REST backfill and the live feed go through the same
    guard, so whichever source delivers a sequence first keeps it and later
    copies are dropped. Sequences below the mark are never gap-filled.
    """

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._high_water_mark = 0

    @property
    def high_water_mark(self) -> int:
        """Largest sequence currently held, 0 when empty."""
        return self._high_water_mark

    def replace_all(self, events: list[Event]) -> None:
        """Seed the buffer from the initial backfill."""
        ordered: list[Event] = []
        last = 0
        for event in sorted(events, key=lambda e: e.sequence):
            if ordered and event.sequence == last:
                continue
            ordered.append(event)
            last = event.sequence
        self._events = ordered
        self._high_water_mark = ordered[-1].sequence if ordered else 0

    def try_append(self, event: Event) -> bool:
        """Store ``event`` iff its sequence is above the high-water mark."""
        if event.sequence <= self._high_water_mark:
            logger.debug(
                "Dropping event seq=%d (high-water mark %d)",
                event.sequence,
                self._high_water_mark,
            )
            return False
        self._events.append(event)
        self._high_water_mark = event.sequence
        return True

    def snapshot_ordered(self) -> list[Event]:
        """Return a copy of the events in ascending sequence order."""
        return list(self._events)

    def clear(self) -> None:
        self._events = []
        self._high_water_mark = 0

    def __len__(self) -> int:
        return len(self._events)
