"""Reads and writes of the two shared keys that make up a named lock.

`<name>-x` is the announcement: whoever most recently started an attempt. It is only
ever used to notice that somebody else showed up while we were claiming the lease.

`<name>-y` is the lease: `<contender id>,<unix millis>`. A fresh lease is the sole
authority on who holds the lock. An absent, stale, or unreadable lease means 'free'.
"""

import typing as ty

from thds.core import log

from .errors import StoreUnavailable
from .types import Lease, SharedStore

logger = log.getLogger(__name__)

SEP = ","


def encode_lease(lease: Lease) -> str:
    assert SEP not in lease.holder_id, f"{lease.holder_id} must not contain '{SEP}'"
    return f"{lease.holder_id}{SEP}{lease.refreshed_at_ms}"


def decode_lease(raw: str) -> ty.Optional[Lease]:
    holder_id, _, timestamp = raw.rpartition(SEP)
    try:
        refreshed_at_ms = int(timestamp)
    except ValueError:
        refreshed_at_ms = -1
    if not holder_id or refreshed_at_ms < 0:
        return None
    return Lease(holder_id, refreshed_at_ms)


class LockKeys:
    """The shared store accessor for one lock name."""

    def __init__(self, name: str, store: SharedStore) -> None:
        self.name = name
        self.store = store
        self.x_key = f"{name}-x"
        self.y_key = f"{name}-y"

    def _call(self, op: str, key: str, fn: ty.Callable[[], ty.Any]) -> ty.Any:
        try:
            return fn()
        except Exception as err:
            logger.error(f"Failed to {op} {key}", lock=self.name)
            raise StoreUnavailable(f"Could not {op} {key}: {err}") from err

    def announce(self, contender_id: str) -> None:
        self._call("set", self.x_key, lambda: self.store.set(self.x_key, contender_id))

    def announced(self) -> ty.Optional[str]:
        return self._call("get", self.x_key, lambda: self.store.get(self.x_key))

    def write_lease(self, contender_id: str, now_ms: int) -> None:
        value = encode_lease(Lease(contender_id, now_ms))
        self._call("set", self.y_key, lambda: self.store.set(self.y_key, value))

    def lease(self) -> ty.Optional[Lease]:
        raw = self._call("get", self.y_key, lambda: self.store.get(self.y_key))
        if raw is None:
            return None
        lease = decode_lease(raw)
        if lease is None:
            logger.warning(f"Unreadable lease {raw!r} will be treated as free", lock=self.name)
        return lease

    def live_lease(self, now_ms: int, max_lock_time_ms: int) -> ty.Optional[Lease]:
        """The current lease, if and only if it is fresh."""
        lease = self.lease()
        if lease and not lease.is_fresh(now_ms, max_lock_time_ms):
            logger.debug(
                "Lease %s has expired - treating the lock as free",
                self.y_key,
                holder=lease.holder_id,
                age_ms=lease.age_ms(now_ms),
            )
            return None
        return lease

    def clear_lease(self) -> None:
        self._call("remove", self.y_key, lambda: self.store.remove(self.y_key))
