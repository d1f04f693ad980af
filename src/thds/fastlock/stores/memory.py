"""An in-process shared store, mostly useful for tests.

Each `context()` behaves like a separate execution context: it always reads its own
writes immediately, but its writes only become visible to every other context after its
`lag`. This makes it possible to probe what happens to the lock when store writes take
longer to propagate than the lock assumes.
"""

import threading
import time
import typing as ty
from collections import defaultdict
from datetime import timedelta


class _Write(ty.NamedTuple):
    visible_at: float
    writer: object
    value: ty.Optional[str]  # None means removed


class MemoryStore:
    """Thread-safe. Used directly, it is itself a context with no lag."""

    def __init__(self, clock: ty.Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._writes: ty.Dict[str, ty.List[_Write]] = defaultdict(list)

    def context(self, lag: timedelta = timedelta(0)) -> "MemoryContext":
        return MemoryContext(self, lag.total_seconds())

    def read_as(self, reader: object, key: str) -> ty.Optional[str]:
        with self._lock:
            now = self._clock()
            for write in reversed(self._writes.get(key, ())):
                if write.writer is reader or write.visible_at <= now:
                    return write.value
            return None

    def write_as(self, writer: object, lag_s: float, key: str, value: ty.Optional[str]) -> None:
        with self._lock:
            now = self._clock()
            writes = self._writes[key]
            writes.append(_Write(now + lag_s, writer, value))
            # nobody can ever read past the newest write that is visible to everyone.
            for i in range(len(writes) - 1, 0, -1):
                if writes[i].visible_at <= now:
                    del writes[:i]
                    break

    def visible(self) -> ty.Dict[str, str]:
        """What an outside observer with no lag of its own would see right now."""
        return {
            key: value
            for key in list(self._writes)
            for value in [self.read_as(None, key)]
            if value is not None
        }

    def get(self, key: str) -> ty.Optional[str]:
        return self.read_as(self, key)

    def set(self, key: str, value: str) -> None:
        self.write_as(self, 0.0, key, value)

    def remove(self, key: str) -> None:
        self.write_as(self, 0.0, key, None)


class MemoryContext:
    def __init__(self, store: MemoryStore, lag_s: float) -> None:
        self.store = store
        self.lag_s = lag_s

    def get(self, key: str) -> ty.Optional[str]:
        return self.store.read_as(self, key)

    def set(self, key: str, value: str) -> None:
        self.store.write_as(self, self.lag_s, key, value)

    def remove(self, key: str) -> None:
        self.store.write_as(self, self.lag_s, key, None)
