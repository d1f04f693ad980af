import typing as ty

import pytest

from thds.fastlock import acquire
from thds.fastlock.stores import MemoryStore


class FakeTimer:
    def __init__(self, delay: float, callback: ty.Callable, args: tuple) -> None:
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Records everything scheduled on it; nothing runs until a test fires it."""

    def __init__(self) -> None:
        self.timers: ty.List[FakeTimer] = list()

    def call_later(self, delay: float, callback: ty.Callable, *args) -> FakeTimer:
        timer = FakeTimer(delay, callback, args)
        self.timers.append(timer)
        return timer

    def pending(self) -> ty.List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def fire_next(self) -> FakeTimer:
        timer = self.pending()[0]
        self.timers.remove(timer)
        timer.callback(*timer.args)
        return timer


class FakeClock:
    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def fake_loop() -> FakeLoop:
    return FakeLoop()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def fast_timing() -> ty.Iterator[None]:
    """No initial jitter and a short verification delay, so real-loop tests run quickly.

    Set globally rather than locally so that contenders on other threads see it too.
    """
    items = (acquire.JITTER_S, acquire.VERIFY_DELAY_S)
    originals = [item() for item in items]
    acquire.JITTER_S.set_global(0.0)
    acquire.VERIFY_DELAY_S.set_global(0.05)
    try:
        yield
    finally:
        for item, original in zip(items, originals):
            item.set_global(original)
