from __future__ import annotations

import threading

import allure
import pytest

from crew_control.timers import ManualScheduler, ThreadingScheduler

pytestmark = [
    allure.epic("Worker Fleet"),
    allure.feature("Timers"),
]


def test_manual_scheduler_fires_due_timers_in_order(scheduler) -> None:
    fired: list[str] = []
    scheduler.call_later(5, lambda: fired.append("late"))
    scheduler.call_later(1, lambda: fired.append("early"))

    scheduler.advance(2)
    assert fired == ["early"]

    scheduler.advance(3)
    assert fired == ["early", "late"]
    assert scheduler.monotonic() == pytest.approx(5.0)


def test_manual_scheduler_recurring_and_cancel(scheduler) -> None:
    ticks: list[float] = []
    handle = scheduler.call_every(2, lambda: ticks.append(scheduler.monotonic()))

    scheduler.advance(7)
    handle.cancel()
    scheduler.advance(10)

    assert ticks == [2.0, 4.0, 6.0]
    assert scheduler.pending == 0


def test_sleep_moves_clock_without_firing_timers() -> None:
    scheduler = ManualScheduler()
    fired: list[bool] = []
    scheduler.call_later(1, lambda: fired.append(True))
    start = scheduler.now()

    scheduler.sleep(3)

    assert fired == []
    assert (scheduler.now() - start).total_seconds() == 3


def test_failing_callback_does_not_stop_the_scheduler(scheduler) -> None:
    fired: list[int] = []

    def _boom() -> None:
        raise RuntimeError("boom")

    scheduler.call_later(1, _boom)
    scheduler.call_later(2, lambda: fired.append(1))
    scheduler.advance(5)

    assert fired == [1]


def test_threading_scheduler_runs_and_cancels_callbacks() -> None:
    scheduler = ThreadingScheduler()
    done = threading.Event()
    skipped = threading.Event()

    scheduler.call_later(0.01, done.set)
    handle = scheduler.call_later(0.5, skipped.set)
    handle.cancel()

    assert done.wait(timeout=5)
    assert not skipped.wait(timeout=0.7)


def test_call_every_rejects_non_positive_interval(scheduler) -> None:
    with pytest.raises(ValueError, match="interval"):
        scheduler.call_every(0, lambda: None)
