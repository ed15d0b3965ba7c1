"""Shared fixtures: a controllable clock and a hand-driven scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from vibeflow.config import EngineConfig
from vibeflow.context.engine import SessionEngine
from vibeflow.context.store import SessionStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ManualTimer:
    def __init__(self, delay: float, callback, repeat: bool = False):
        self.delay = delay
        self.callback = callback
        self.repeat = repeat
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Records timers instead of starting threads; tests fire them."""

    def __init__(self):
        self.timers: list[ManualTimer] = []

    def call_later(self, delay, callback):
        timer = ManualTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def call_every(self, interval, callback):
        timer = ManualTimer(interval, callback, repeat=True)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.repeat]

    @property
    def repeating(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and t.repeat]

    def run_pending(self) -> int:
        fired = 0
        for timer in self.pending:
            timer.cancelled = True
            timer.callback()
            fired += 1
        return fired

    def tick(self) -> None:
        for timer in self.repeating:
            timer.callback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def store(data_dir, scheduler) -> SessionStore:
    return SessionStore(data_dir, scheduler=scheduler)


@pytest.fixture
def make_engine(store, clock, scheduler):
    """Build engines over the shared store with optional config overrides."""
    engines = []

    def factory(config: EngineConfig | None = None, store_: SessionStore | None = None) -> SessionEngine:
        eng = SessionEngine(store_ or store, config or EngineConfig(), clock=clock, scheduler=scheduler)
        engines.append(eng)
        return eng

    yield factory
    for eng in engines:
        eng.close()


@pytest.fixture
def engine(make_engine) -> SessionEngine:
    return make_engine()


@pytest.fixture
def repo(tmp_path):
    """A git repository with a nested source directory."""
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    (root / "src" / "pkg").mkdir(parents=True)
    return root
