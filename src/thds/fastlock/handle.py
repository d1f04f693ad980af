import asyncio
import atexit
import contextlib
import random
import typing as ty
from datetime import timedelta

from thds.core import log

from . import _funcs, acquire, ids
from .errors import AcquireTimeout, StoreUnavailable
from .keys import LockKeys
from .refresh import LeaseRefresher
from .types import Clock, SharedStore, Teardown

logger = log.getLogger(__name__)


class Locker:
    """A named lock shared by every context that can reach the same store.

    Create one per lock name per context, and keep it for the lifetime of the context.
    Everything the Locker schedules is owned by it, and `release` is the single way to
    stop all of it.

    `release` is registered with `teardown` (by default, `atexit.register`) so that a
    context exiting normally gives up its lease. A context that is killed outright will
    not, and its lease will instead go stale after `max_lock_time`.
    """

    def __init__(
        self,
        name: str,
        store: SharedStore,
        *,
        teardown: ty.Optional[Teardown] = atexit.register,
        rng: ty.Optional[random.Random] = None,
        clock: Clock = _funcs.now_ms,
    ) -> None:
        self.keys = LockKeys(name, store)
        self.clock = clock
        self.contender_id = ids.contender_id(clock())
        self._rng = rng

        self._future: ty.Optional["asyncio.Future[None]"] = None
        self._acquisition: ty.Optional[acquire.Acquisition] = None
        self._refresher: ty.Optional[LeaseRefresher] = None
        self._deadline_timer: ty.Optional[asyncio.TimerHandle] = None
        self._held = False

        if teardown:
            teardown(self.release)

    @property
    def name(self) -> str:
        return self.keys.name

    @property
    def held(self) -> bool:
        """True from the moment the lock is acquired until it is released or lost."""
        return self._held

    def acquire(
        self,
        max_lock_time: timedelta = timedelta(seconds=5),
        refresh_time: timedelta = timedelta(seconds=1),
        *,
        deadline: ty.Optional[timedelta] = None,
    ) -> "asyncio.Future[None]":
        """Return a future that resolves (with None) once this context holds the lock.

        Must be called from within a running event loop.

        `refresh_time` must be comfortably shorter than `max_lock_time`, such that the
        lease is refreshed at least once before it could go stale. It is up to you to
        pick these sensibly, and to use the same `max_lock_time` in every context.

        With no `deadline`, acquisition will keep trying for as long as it takes. With a
        deadline, the future fails with AcquireTimeout once the deadline has passed.

        Cancelling the returned future abandons the acquisition, exactly as if `release`
        had been called. Calling this again while an acquisition is pending or the lock is
        held returns the same future.
        """
        if self._future and (self._held or not self._future.done()):
            return self._future

        loop = asyncio.get_running_loop()
        if refresh_time >= max_lock_time:
            logger.warning(
                f"Refresh time {refresh_time} is not shorter than max lock time {max_lock_time};"
                f" the lease on {self.name} will go stale while it is held.",
            )

        future: "asyncio.Future[None]" = loop.create_future()
        self._future = future
        self._acquisition = acquire.Acquisition(
            loop,
            self.keys,
            self.contender_id,
            _funcs.to_ms(max_lock_time),
            on_acquired=lambda: self._on_acquired(future, refresh_time, max_lock_time),
            on_failed=lambda err: self._on_failed(future, err),
            clock=self.clock,
            verify_delay_s=acquire.VERIFY_DELAY_S(),
            retry_delay_s=acquire.CONTENTION_RETRY_S(),
        )
        future.add_done_callback(self._abandon_if_cancelled)
        if deadline is not None:
            self._deadline_timer = loop.call_later(
                _funcs.to_s(deadline), self._on_deadline, future, deadline
            )
        self._acquisition.start(ids.jitter_s(acquire.JITTER_S(), self._rng))
        return future

    def release(self) -> None:
        """Stop everything this Locker has scheduled, then give up the lease.

        Synchronous and idempotent; safe to call at any time, including before an
        acquisition completes. A pending acquisition is cancelled and will never resolve.

        The lease is removed only if it names this contender (or is already gone). A
        lease that belongs to somebody else is theirs to release, and a Locker that never
        called `acquire` does not touch the store at all. The announcement key is always
        left as is.
        """
        had_work = self._future is not None
        was_held = self._held
        self._held = False
        # stop the heartbeat before touching the lease, so that nothing can write it back.
        if self._refresher:
            self._refresher.stop()
            self._refresher = None
        if self._acquisition:
            self._acquisition.cancel()
            self._acquisition = None
        if self._deadline_timer:
            self._deadline_timer.cancel()
            self._deadline_timer = None

        future, self._future = self._future, None
        if future and not future.done():
            future.cancel()

        if had_work:
            self._clear_own_lease()
            if was_held:
                logger.info("Released lock %s", self.name, contender=self.contender_id)

    @contextlib.asynccontextmanager
    async def hold(
        self,
        max_lock_time: timedelta = timedelta(seconds=5),
        refresh_time: timedelta = timedelta(seconds=1),
        *,
        deadline: ty.Optional[timedelta] = None,
    ) -> ty.AsyncIterator["Locker"]:
        await self.acquire(max_lock_time, refresh_time, deadline=deadline)
        try:
            yield self
        finally:
            self.release()

    def _clear_own_lease(self) -> None:
        lease = self.keys.lease()
        if lease and lease.holder_id != self.contender_id:
            logger.debug("Lease on %s belongs to %s - leaving it be", self.name, lease.holder_id)
            return
        self.keys.clear_lease()

    def _on_acquired(
        self, future: "asyncio.Future[None]", refresh_time: timedelta, max_lock_time: timedelta
    ) -> None:
        if future is not self._future or future.done():
            return  # pragma: no cover
        if self._deadline_timer:
            self._deadline_timer.cancel()
            self._deadline_timer = None

        self._held = True
        self._refresher = LeaseRefresher(
            future.get_loop(),
            self.keys,
            self.contender_id,
            _funcs.to_s(refresh_time),
            _funcs.to_ms(max_lock_time),
            clock=self.clock,
            on_lost=self._on_lost,
        )
        self._refresher.start()
        logger.info("Acquired lock %s", self.name, contender=self.contender_id)
        future.set_result(None)

    def _on_failed(self, future: "asyncio.Future[None]", err: StoreUnavailable) -> None:
        if self._deadline_timer:
            self._deadline_timer.cancel()
            self._deadline_timer = None
        # the store may have failed after our claim landed, which would leave us
        # queued up behind our own lease on the next attempt.
        try:
            self._clear_own_lease()
        except StoreUnavailable:
            logger.warning(
                "Could not clear our claim on %s; it will go stale on its own",
                self.name,
                contender=self.contender_id,
            )
        if not future.done():
            future.set_exception(err)

    def _on_deadline(self, future: "asyncio.Future[None]", deadline: timedelta) -> None:
        self._deadline_timer = None
        if future is not self._future or future.done():
            return
        logger.info(f"Could not acquire lock {self.name} within {deadline}")
        future.set_exception(AcquireTimeout(f"Lock {self.name} was not acquired within {deadline}"))
        self.release()

    def _abandon_if_cancelled(self, future: "asyncio.Future[None]") -> None:
        if future.cancelled() and future is self._future:
            logger.debug("Acquisition of %s was cancelled by the caller", self.name)
            self.release()

    def _on_lost(self) -> None:
        self._held = False
        self._refresher = None
