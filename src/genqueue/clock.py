"""Injectable time source and the cooperative timer loop every instance runs on."""

from __future__ import annotations

import heapq
import itertools
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .app_logging import log_with_fields
from .errors import GenQueueError


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class ManualClock:
    """Virtual time for tests; sleeping just moves the clock forward."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds


@dataclass(slots=True)
class Timer:
    name: str
    callback: Callable[[], None]
    due: float
    interval: float | None = None
    cancelled: bool = field(default=False)

    def cancel(self) -> None:
        self.cancelled = True


class TimerLoop:
    """Single-threaded scheduler of one-shot and repeating callbacks.

    Callbacks run on the caller's thread, in due order. A failing callback
    is logged and does not stop the loop; repeating timers simply fire
    again on their next interval.
    """

    def __init__(self, clock: Clock, logger: logging.Logger) -> None:
        self.clock = clock
        self.logger = logger
        self._heap: list[tuple[float, int, Timer]] = []
        self._seq = itertools.count()
        self._stopped = False

    def call_later(self, delay: float, callback: Callable[[], None], name: str) -> Timer:
        timer = Timer(name=name, callback=callback, due=self.clock.now() + max(delay, 0.0))
        self._push(timer)
        return timer

    def call_every(
        self,
        interval: float,
        callback: Callable[[], None],
        name: str,
        *,
        run_now: bool = False,
    ) -> Timer:
        if interval <= 0:
            raise ValueError(f"timer `{name}` needs a positive interval")
        first = 0.0 if run_now else interval
        timer = Timer(name=name, callback=callback, due=self.clock.now() + first, interval=interval)
        self._push(timer)
        return timer

    def next_due(self) -> float | None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return self._heap[0][0]

    def run_due(self) -> int:
        now = self.clock.now()
        batch: list[Timer] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, timer = heapq.heappop(self._heap)
            if not timer.cancelled:
                batch.append(timer)

        for timer in batch:
            if timer.interval is not None:
                next_due = timer.due + timer.interval
                if next_due <= now:
                    next_due = now + timer.interval
                timer.due = next_due
                self._push(timer)
            self._fire(timer)
        return len(batch)

    def run_for(self, seconds: float) -> None:
        deadline = self.clock.now() + seconds
        while not self._stopped:
            self.run_due()
            now = self.clock.now()
            if now >= deadline:
                return
            next_due = self.next_due()
            wake = deadline if next_due is None else min(next_due, deadline)
            self.clock.sleep(max(wake - now, 0.0))

    def run_forever(self, idle_seconds: float = 1.0) -> None:
        self._stopped = False
        while not self._stopped:
            self.run_due()
            if self._stopped:
                return
            next_due = self.next_due()
            now = self.clock.now()
            wait = idle_seconds if next_due is None else min(max(next_due - now, 0.0), idle_seconds)
            self.clock.sleep(wait)

    def stop(self) -> None:
        self._stopped = True

    def cancel_all(self) -> None:
        for _, _, timer in self._heap:
            timer.cancel()
        self._heap.clear()

    def _push(self, timer: Timer) -> None:
        heapq.heappush(self._heap, (timer.due, next(self._seq), timer))

    def _fire(self, timer: Timer) -> None:
        if timer.cancelled:
            return
        try:
            timer.callback()
        except (GenQueueError, sqlite3.Error, OSError) as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "timer_failed",
                timer=timer.name,
                error=str(exc),
            )
