"""Follow-latest ("tail") state for an event list view."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

DEFAULT_BOTTOM_THRESHOLD_PX = 16.0
DEFAULT_SUPPRESS_MS = 300


class DisabledReason(StrEnum):
    """Why follow mode is currently off."""

    NONE = "none"
    AUTO = "auto"
    MANUAL = "manual"


@dataclass(frozen=True, slots=True)
class FollowState:
    """Snapshot of the follow controller for presentation."""

    enabled: bool
    disabled_reason: DisabledReason
    unseen_count: int


class FollowScrollController:
    """Decides whether new events scroll the view to the bottom.

    Scrolling away from the bottom while following turns follow off
    (``auto``); scrolling back re-enables it. An explicit toggle off
    (``manual``) is only undone by another explicit action. After every
    programmatic scroll, position reports are ignored for a short window so
    the scroll we caused is not mistaken for the user leaving the bottom.
    """

    def __init__(
        self,
        *,
        threshold_px: float = DEFAULT_BOTTOM_THRESHOLD_PX,
        suppress_ms: int = DEFAULT_SUPPRESS_MS,
        clock: Callable[[], float] = time.monotonic,
        scroll_to_bottom: Callable[[], None] | None = None,
    ) -> None:
        self._threshold_px = threshold_px
        self._suppress_s = suppress_ms / 1000.0
        self._clock = clock
        self._scroll_to_bottom = scroll_to_bottom
        self._enabled = True
        self._reason = DisabledReason.NONE
        self._unseen = 0
        self._suppress_until = 0.0

    @property
    def state(self) -> FollowState:
        return FollowState(self._enabled, self._reason, self._unseen)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def disabled_reason(self) -> DisabledReason:
        return self._reason

    @property
    def unseen_count(self) -> int:
        return self._unseen

    def is_suppressed(self) -> bool:
        return self._clock() < self._suppress_until

    def reset(self) -> None:
        self._enabled = True
        self._reason = DisabledReason.NONE
        self._unseen = 0
        self._suppress_until = 0.0

    def set_follow(self, enabled: bool) -> None:
        """Explicit user toggle."""
        if enabled:
            self.jump_to_latest()
            return
        self._enabled = False
        self._reason = DisabledReason.MANUAL

    def jump_to_latest(self) -> None:
        self._enabled = True
        self._reason = DisabledReason.NONE
        self._unseen = 0
        self._programmatic_scroll()

    def on_scroll(self, distance_from_bottom: float) -> None:
        """Handle a scroll-position report from the view."""
        if self.is_suppressed():
            return
        at_bottom = distance_from_bottom <= self._threshold_px
        if self._enabled:
            if not at_bottom:
                self._enabled = False
                self._reason = DisabledReason.AUTO
            return
        if self._reason is DisabledReason.AUTO and at_bottom:
            self._enabled = True
            self._reason = DisabledReason.NONE
            self._unseen = 0

    def on_events_appended(self, count: int = 1) -> bool:
        """Account for newly accepted events; return True if we scrolled."""
        if count <= 0:
            return False
        if self._enabled:
            self._unseen = 0
            self._programmatic_scroll()
            return True
        self._unseen += count
        return False

    def _programmatic_scroll(self) -> None:
        self._suppress_until = self._clock() + self._suppress_s
        if self._scroll_to_bottom is not None:
            self._scroll_to_bottom()
