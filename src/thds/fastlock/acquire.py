"""An adaptation of Lamport's 'fast' mutual exclusion algorithm to a shared key-value
store that offers nothing but get, set, and remove.

Every contender runs the same protocol on its own event loop:

1. announce itself in X.
2. read the lease Y. If it is held (and fresh), try again on the next loop iteration.
3. claim the lease by writing itself into Y.
4. read X. If X is still us, nobody showed up in the meantime, and we have the lock.
   Otherwise, wait long enough for any concurrent claim to become visible, then check Y:
   if it still names us we have the lock, otherwise start over.

This is not a true lock. Its correctness rests entirely on the verification delay being
longer than the time it takes any write to become visible to every other contender. If
writes propagate more slowly than that, two contenders can both believe that they hold
the lock. The lease timestamp, on the other hand, means that a holder that vanishes
without releasing blocks everyone else for no longer than `max_lock_time`.

Nothing here is fair. Under sustained contention, a contender may retry forever.
"""

import asyncio
import typing as ty

from thds.core import config, log

from .errors import ConcurrentClaimLost, StoreUnavailable
from .keys import LockKeys
from .types import Clock

JITTER_S = config.item("thds.fastlock.acquire.jitter_s", 2.0, parse=float)
# upper bound of the random initial delay, to desynchronize simultaneous acquirers.
VERIFY_DELAY_S = config.item("thds.fastlock.acquire.verify_delay_s", 0.1, parse=float)
# must exceed the worst-case time for a write to become visible to every other contender.
CONTENTION_RETRY_S = config.item("thds.fastlock.acquire.contention_retry_s", 0.0, parse=float)
# 0 still goes through the event loop, so sustained contention never grows the stack.

logger = log.getLogger(__name__)


class Acquisition:
    """One run of the protocol, from the first attempt until the lock is acquired, the
    store fails, or the run is cancelled.

    Every step is synchronous; the only suspension points are the loop timers between
    steps. Once cancelled, no timer callback will have any further effect.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        keys: LockKeys,
        contender_id: str,
        max_lock_time_ms: int,
        *,
        on_acquired: ty.Callable[[], None],
        on_failed: ty.Callable[[StoreUnavailable], None],
        clock: Clock,
        verify_delay_s: float,
        retry_delay_s: float = 0.0,
    ) -> None:
        self.loop = loop
        self.keys = keys
        self.contender_id = contender_id
        self.max_lock_time_ms = max_lock_time_ms
        self.on_acquired = on_acquired
        self.on_failed = on_failed
        self.clock = clock
        self.verify_delay_s = verify_delay_s
        self.retry_delay_s = retry_delay_s

        self.rounds = 0
        self.cancelled = False
        self.acquired = False
        self._retry_timer: ty.Optional[asyncio.Handle] = None
        self._verify_timer: ty.Optional[asyncio.Handle] = None
        self._last_seen_holder = ""

    def start(self, delay_s: float) -> None:
        logger.debug(
            "Will attempt lock %s in %.3f seconds", self.keys.name, delay_s, contender=self.contender_id
        )
        self._retry_timer = self.loop.call_later(delay_s, self._attempt)

    def cancel(self) -> None:
        self.cancelled = True
        for timer in (self._retry_timer, self._verify_timer):
            if timer:
                timer.cancel()
        self._retry_timer = None
        self._verify_timer = None

    def _attempt(self) -> None:
        self._retry_timer = None
        self._guarded(self._run)

    def _verify(self) -> None:
        self._verify_timer = None
        self._guarded(self._check_claim_survived)

    def _guarded(self, step: ty.Callable[[], None]) -> None:
        if self.cancelled:
            return
        try:
            step()
        except StoreUnavailable as err:
            logger.warning(f"Giving up on lock {self.keys.name}: {err}", contender=self.contender_id)
            self.cancel()
            self.on_failed(err)

    def _run(self) -> None:
        self.rounds += 1
        self.keys.announce(self.contender_id)

        lease = self.keys.live_lease(self.clock(), self.max_lock_time_ms)
        if lease:
            if lease.holder_id != self._last_seen_holder:
                logger.debug(
                    "Lock %s is held - will keep retrying", self.keys.name, holder=lease.holder_id
                )
                self._last_seen_holder = lease.holder_id
            self._retry_timer = self.loop.call_later(self.retry_delay_s, self._attempt)
            return

        self.keys.write_lease(self.contender_id, self.clock())

        if self.keys.announced() == self.contender_id:
            self._become_holder()
            return

        # someone else announced after we did. They may be about to overwrite our claim,
        # so give their write enough time to land before deciding who won.
        logger.debug(
            "Contention on %s - waiting %s seconds to verify our claim",
            self.keys.name,
            self.verify_delay_s,
        )
        self._verify_timer = self.loop.call_later(self.verify_delay_s, self._verify)

    def _check_claim_survived(self) -> None:
        try:
            lease = self.keys.lease()
            if not lease or lease.holder_id != self.contender_id:
                raise ConcurrentClaimLost(
                    f"Lease on {self.keys.name} now belongs to {lease.holder_id if lease else 'nobody'}"
                )
        except ConcurrentClaimLost as lost:
            # this is info (not debug) because we expect it to be rare.
            logger.info(f"Lost race for lock {self.keys.name}: {lost}")
            self._run()
            return

        self._become_holder()

    def _become_holder(self) -> None:
        self.acquired = True
        logger.debug("Acquired lock %s after %d rounds", self.keys.name, self.rounds)
        self.on_acquired()
