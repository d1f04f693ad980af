import typing as ty

import pytest

from thds.fastlock import acquire
from thds.fastlock.acquire import Acquisition
from thds.fastlock.errors import StoreUnavailable
from thds.fastlock.keys import LockKeys
from thds.fastlock.stores import MemoryStore


class Outcome:
    def __init__(self) -> None:
        self.acquired = 0
        self.failures: ty.List[StoreUnavailable] = list()

    def on_acquired(self) -> None:
        self.acquired += 1

    def on_failed(self, err: StoreUnavailable) -> None:
        self.failures.append(err)


class Interloper(MemoryStore):
    """Right after our claim on the lease lands, somebody else does some writes."""

    def __init__(self, *writes: ty.Tuple[str, str]) -> None:
        super().__init__()
        self.writes = list(writes)

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        if key.endswith("-y") and self.writes:
            writes, self.writes = self.writes, list()
            for k, v in writes:
                super().set(k, v)


class BrokenStore(MemoryStore):
    def get(self, key: str) -> ty.Optional[str]:
        raise OSError("disk on fire")


@pytest.fixture
def outcome() -> Outcome:
    return Outcome()


def make_acquisition(loop, store, clock, outcome, max_lock_time_ms=5000) -> Acquisition:
    return Acquisition(
        loop,  # type: ignore
        LockKeys("L", store),
        "me",
        max_lock_time_ms,
        on_acquired=outcome.on_acquired,
        on_failed=outcome.on_failed,
        clock=clock,
        verify_delay_s=0.1,
        retry_delay_s=0.0,
    )


def test_uncontended_lock_is_acquired_after_jitter_in_one_round(fake_loop, store, clock, outcome):
    acq = make_acquisition(fake_loop, store, clock, outcome)
    acq.start(1.5)

    assert not outcome.acquired
    assert [t.delay for t in fake_loop.pending()] == [1.5]

    fake_loop.fire_next()
    assert outcome.acquired == 1
    assert acq.rounds == 1
    assert store.get("L-x") == "me"
    assert store.get("L-y") == f"me,{clock.now_ms}"
    assert not fake_loop.pending()


def test_held_lease_retries_through_the_loop_with_no_delay(fake_loop, store, clock, outcome):
    store.set("L-y", f"other,{clock.now_ms}")
    acq = make_acquisition(fake_loop, store, clock, outcome)
    acq.start(0.0)

    for rounds in range(1, 4):
        fake_loop.fire_next()
        assert acq.rounds == rounds
        assert not outcome.acquired
        (retry,) = fake_loop.pending()
        assert retry.delay == 0.0
        assert store.get("L-x") == "me"  # announced on every attempt
        assert store.get("L-y") == f"other,{clock.now_ms}"  # never touched while held

    store.remove("L-y")
    fake_loop.fire_next()
    assert outcome.acquired == 1


@pytest.mark.parametrize("age_ms, acquired", [(4999, 0), (5000, 1), (60_000, 1)])
def test_lease_is_only_authoritative_while_fresh(fake_loop, store, clock, outcome, age_ms, acquired):
    store.set("L-y", f"other,{clock.now_ms - age_ms}")
    make_acquisition(fake_loop, store, clock, outcome).start(0.0)
    fake_loop.fire_next()
    assert outcome.acquired == acquired


def test_unreadable_lease_is_free(fake_loop, store, clock, outcome):
    store.set("L-y", "not a lease")
    make_acquisition(fake_loop, store, clock, outcome).start(0.0)
    fake_loop.fire_next()
    assert outcome.acquired == 1


def test_stale_announcement_never_blocks(fake_loop, store, clock, outcome):
    store.set("L-x", "somebody-long-gone")
    make_acquisition(fake_loop, store, clock, outcome).start(0.0)
    fake_loop.fire_next()
    assert outcome.acquired == 1


def test_interleaved_announcement_waits_then_wins_if_claim_stands(fake_loop, clock, outcome):
    store = Interloper(("L-x", "other"))
    acq = make_acquisition(fake_loop, store, clock, outcome)
    acq.start(0.0)

    fake_loop.fire_next()
    assert not outcome.acquired
    (verify,) = fake_loop.pending()
    assert verify.delay == 0.1

    fake_loop.fire_next()
    assert outcome.acquired == 1
    assert acq.rounds == 1


def test_interleaved_claim_that_wins_sends_us_back_to_the_start(fake_loop, clock, outcome):
    store = Interloper(("L-x", "other"), ("L-y", f"other,{clock.now_ms}"))
    acq = make_acquisition(fake_loop, store, clock, outcome)
    acq.start(0.0)

    fake_loop.fire_next()  # claim, then see 'other' in X
    fake_loop.fire_next()  # verify: 'other' owns the lease now, so start over
    assert not outcome.acquired
    assert acq.rounds == 2
    assert store.get("L-x") == "me"
    (retry,) = fake_loop.pending()
    assert retry.delay == 0.0  # and found it held


def test_cancel_prevents_any_further_effect(fake_loop, store, clock, outcome):
    acq = make_acquisition(fake_loop, store, clock, outcome)
    acq.start(0.0)
    (timer,) = fake_loop.timers

    acq.cancel()
    assert timer.cancelled

    timer.callback()  # as though it was already queued when we cancelled
    assert not outcome.acquired
    assert store.get("L-x") is None
    assert store.get("L-y") is None


def test_cancel_during_verification(fake_loop, clock, outcome):
    store = Interloper(("L-x", "other"))
    acq = make_acquisition(fake_loop, store, clock, outcome)
    acq.start(0.0)
    fake_loop.fire_next()
    (verify,) = fake_loop.pending()

    acq.cancel()
    assert verify.cancelled
    verify.callback()
    assert not outcome.acquired


def test_store_failure_fails_the_acquisition(fake_loop, clock, outcome):
    acq = make_acquisition(fake_loop, BrokenStore(), clock, outcome)
    acq.start(0.0)
    fake_loop.fire_next()

    assert not outcome.acquired
    (err,) = outcome.failures
    assert isinstance(err.__cause__, OSError)
    assert acq.cancelled
    assert not fake_loop.pending()


def test_default_timing():
    assert acquire.JITTER_S() == 2.0
    assert acquire.VERIFY_DELAY_S() == 0.1
    assert acquire.CONTENTION_RETRY_S() == 0.0
