import time
from datetime import timedelta


def now_ms() -> int:
    # wall clock, not monotonic, because leases are compared across processes.
    return int(time.time() * 1000)


def to_ms(td: timedelta) -> int:
    return int(td.total_seconds() * 1000)


def to_s(td: timedelta) -> float:
    return td.total_seconds()
