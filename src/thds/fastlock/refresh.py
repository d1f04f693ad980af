"""Keeps a held lease fresh by rewriting its timestamp at a fixed interval.

A lease that stops being refreshed goes stale after `max_lock_time` and is then free for
any other contender to take, so the refresh interval must be comfortably shorter than
`max_lock_time`.
"""

import asyncio
import typing as ty

from thds.core import log

from .errors import StoreUnavailable
from .keys import LockKeys
from .types import Clock

logger = log.getLogger(__name__)


class LeaseRefresher:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        keys: LockKeys,
        contender_id: str,
        interval_s: float,
        max_lock_time_ms: int,
        *,
        clock: Clock,
        on_lost: ty.Callable[[], None],
    ) -> None:
        self.loop = loop
        self.keys = keys
        self.contender_id = contender_id
        self.interval_s = interval_s
        self.max_lock_time_ms = max_lock_time_ms
        self.clock = clock
        self.on_lost = on_lost

        self.refreshes = 0
        self.stopped = False
        self._timer: ty.Optional[asyncio.TimerHandle] = None

    def start(self) -> None:
        self._timer = self.loop.call_later(self.interval_s, self._tick)

    def stop(self) -> None:
        """Synchronous. Once this returns, the lease will never be written again."""
        self.stopped = True
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def _tick(self) -> None:
        self._timer = None
        if self.stopped:
            return

        try:
            lease = self.keys.live_lease(self.clock(), self.max_lock_time_ms)
            if lease and lease.holder_id != self.contender_id:
                # we went quiet for longer than max_lock_time (a paused process, a blocked
                # loop) and somebody else took the lock. Overwriting their lease would give
                # the lock two holders.
                logger.error(
                    f"Lease on {self.keys.name} was taken over by {lease.holder_id}"
                    " - no longer holding the lock.",
                    contender=self.contender_id,
                )
                self.stop()
                self.on_lost()
                return
            self.keys.write_lease(self.contender_id, self.clock())
            self.refreshes += 1
        except StoreUnavailable as err:
            logger.warning(
                f"Could not refresh lease on {self.keys.name}; will try again: {err}",
                contender=self.contender_id,
            )

        self._timer = self.loop.call_later(self.interval_s, self._tick)
