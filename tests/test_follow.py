from __future__ import annotations

from bastion_runwatch.follow import DisabledReason, FollowScrollController


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _controller() -> tuple[FollowScrollController, FakeClock, list[int]]:
    clock = FakeClock()
    scrolls: list[int] = []
    controller = FollowScrollController(
        threshold_px=16,
        suppress_ms=300,
        clock=clock,
        scroll_to_bottom=lambda: scrolls.append(1),
    )
    return controller, clock, scrolls


def test_follow_scrolls_on_new_events() -> None:
    controller, _, scrolls = _controller()

    assert controller.on_events_appended(3) is True
    assert scrolls == [1]
    assert controller.unseen_count == 0


def test_scrolling_away_disables_follow_and_counts_unseen() -> None:
    controller, _, scrolls = _controller()

    controller.on_scroll(200)
    assert not controller.enabled
    assert controller.disabled_reason is DisabledReason.AUTO

    assert controller.on_events_appended(2) is False
    assert controller.on_events_appended(1) is False
    assert controller.unseen_count == 3
    assert scrolls == []


def test_returning_to_bottom_re_enables_auto_disabled_follow() -> None:
    controller, _, _ = _controller()
    controller.on_scroll(200)
    controller.on_events_appended(4)

    controller.on_scroll(10)

    assert controller.enabled
    assert controller.disabled_reason is DisabledReason.NONE
    assert controller.unseen_count == 0


def test_manual_disable_survives_scroll_to_bottom() -> None:
    controller, _, _ = _controller()
    controller.set_follow(False)

    controller.on_scroll(0)
    controller.on_events_appended(1)

    assert not controller.enabled
    assert controller.disabled_reason is DisabledReason.MANUAL
    assert controller.unseen_count == 1


def test_scroll_reports_ignored_right_after_programmatic_scroll() -> None:
    controller, clock, _ = _controller()
    controller.on_events_appended(1)

    clock.advance(0.1)
    controller.on_scroll(500)
    assert controller.enabled

    clock.advance(0.25)
    assert not controller.is_suppressed()
    controller.on_scroll(500)
    assert not controller.enabled


def test_jump_to_latest_clears_unseen_and_scrolls() -> None:
    controller, _, scrolls = _controller()
    controller.set_follow(False)
    controller.on_events_appended(5)

    controller.jump_to_latest()

    assert controller.enabled
    assert controller.unseen_count == 0
    assert scrolls == [1]
    assert controller.is_suppressed()


def test_set_follow_true_behaves_like_jump() -> None:
    controller, _, scrolls = _controller()
    controller.on_scroll(100)
    controller.on_events_appended(2)

    controller.set_follow(True)

    assert controller.state.enabled
    assert controller.state.unseen_count == 0
    assert scrolls == [1]


def test_zero_appended_events_is_a_no_op() -> None:
    controller, _, scrolls = _controller()
    assert controller.on_events_appended(0) is False
    assert scrolls == []
