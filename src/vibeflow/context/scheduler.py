"""Timer abstraction for debounced saves and the supervisor tick.

The engine and store only talk to the ``Scheduler`` protocol, so tests can
drive timers by hand instead of sleeping.
"""

from __future__ import annotations

import threading
from typing import Callable, Protocol, runtime_checkable

from loguru import logger

Callback = Callable[[], None]


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Stop the timer. No-op if it already fired or was cancelled."""
        ...


@runtime_checkable
class Scheduler(Protocol):
    """Schedules one-shot and repeating callbacks (delays in seconds)."""

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        ...

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        ...


class _RepeatingTimer(threading.Thread):
    def __init__(self, interval: float, callback: Callback) -> None:
        super().__init__(name="vibeflow-supervisor", daemon=True)
        self._interval = interval
        self._callback = callback
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._callback()
            except Exception:
                logger.exception("Repeating timer callback failed")

    def cancel(self) -> None:
        self._stopped.set()


class ThreadingScheduler:
    """Real timers backed by daemon threads.

    Callbacks run on timer threads; callers serialise state access with
    their own lock.
    """

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        timer = _RepeatingTimer(interval, callback)
        timer.start()
        return timer


class DebouncedWriter:
    """Coalesce writes into one call per *delay* window.

    ``schedule()`` arms a single pending write; ``flush_now()`` cancels it
    and writes immediately, so a forced flush is never followed by a stale
    debounced one.
    """

    def __init__(self, scheduler: Scheduler, delay: float, write: Callback) -> None:
        self._scheduler = scheduler
        self._delay = delay
        self._write = write
        self._pending: TimerHandle | None = None

    def schedule(self) -> None:
        if self._pending is None:
            self._pending = self._scheduler.call_later(self._delay, self._fire)

    def flush_now(self) -> None:
        self.cancel()
        self._write()

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _fire(self) -> None:
        self._pending = None
        self._write()
