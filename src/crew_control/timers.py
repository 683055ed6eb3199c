"""Clock and timer abstraction for health checks, restarts and monitoring ticks."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Stop the timer; calling twice is harmless."""


class Scheduler(Protocol):
    """Time source plus delayed and recurring callbacks."""

    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle: ...


class _ThreadTimer:
    def __init__(self, stop: threading.Event, thread: threading.Thread) -> None:
        self._stop = stop
        self._thread = thread

    def cancel(self) -> None:
        self._stop.set()


class ThreadingScheduler:
    """Wall-clock scheduler backed by daemon threads."""

    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        stop = threading.Event()

        def _run() -> None:
            if stop.wait(timeout=max(0.0, delay)):
                return
            _invoke(callback)

        thread = threading.Thread(target=_run, daemon=True, name="crew-timer")
        thread.start()
        return _ThreadTimer(stop, thread)

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        stop = threading.Event()

        def _run() -> None:
            while not stop.wait(timeout=interval):
                _invoke(callback)

        thread = threading.Thread(target=_run, daemon=True, name="crew-ticker")
        thread.start()
        return _ThreadTimer(stop, thread)


class _ManualTimer:
    __slots__ = ("callback", "cancelled", "interval")

    def __init__(self, callback: Callable[[], None], interval: float | None) -> None:
        self.callback = callback
        self.interval = interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual-time scheduler: nothing fires until ``advance`` is called.

    ``sleep`` moves the clock forward without firing timers, so code that
    sleeps inside a timer callback does not re-enter the scheduler.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._elapsed = 0.0
        self._counter = itertools.count()
        self._queue: list[tuple[float, int, _ManualTimer]] = []
        self._lock = threading.RLock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._elapsed

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._move(seconds)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(callback, None)
        self._push(self.monotonic() + max(0.0, delay), timer)
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        timer = _ManualTimer(callback, interval)
        self._push(self.monotonic() + interval, timer)
        return timer

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, timer in self._queue if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing due timers in order."""

        with self._lock:
            target = self._elapsed + seconds
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, timer = heapq.heappop(self._queue)
                if timer.cancelled:
                    continue
                if due > self._elapsed:
                    self._move(due - self._elapsed)
                if timer.interval is not None:
                    self._push(due + timer.interval, timer)
            _invoke(timer.callback)
        with self._lock:
            if target > self._elapsed:
                self._move(target - self._elapsed)

    def _push(self, due: float, timer: _ManualTimer) -> None:
        with self._lock:
            heapq.heappush(self._queue, (due, next(self._counter), timer))

    def _move(self, seconds: float) -> None:
        with self._lock:
            self._elapsed += seconds
            self._now += timedelta(seconds=seconds)


def _invoke(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception:
        logger.exception("Scheduled callback failed")
