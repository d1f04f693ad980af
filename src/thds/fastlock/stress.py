"""Have N contenders take turns holding one lock for a while, recording every window in
which one of them held it, and fail as soon as two of those windows overlap.

The contenders are asyncio tasks on a single event loop, each with a Locker of its own.
By default they share a MemoryStore, each through its own context with `--lag-ms` of
write lag, so you can watch what happens as store latency approaches and then passes
the verification delay. With `--store-dir` they share a DirectoryStore instead.

For contenders in separate processes, run `thds-fastlock --out-times DIR/lock-times-<i>`
in each, then `--check DIR` here to look for overlaps in what they wrote.
"""

import argparse
import asyncio
import time
import typing as ty
from datetime import timedelta
from pathlib import Path

from thds.core import log

from .handle import Locker
from .stores import DirectoryStore, MemoryStore
from .types import SharedStore

logger = log.getLogger(__name__)


class LockTimes(ty.NamedTuple):
    after_acquire: float
    before_release: float
    idx: int


class OverlappingLockTimes(ValueError):
    """Two contenders held the lock at the same time."""


def check_no_overlaps(windows: ty.Iterable[LockTimes]) -> ty.Tuple[float, float]:
    """Return the smallest and biggest gaps between consecutive holders."""
    ordered = sorted(windows)
    gaps = list()
    for prev, cur in zip(ordered, ordered[1:]):
        gap = cur.after_acquire - prev.before_release
        if gap < 0:
            raise OverlappingLockTimes(f"Contenders {prev.idx} and {cur.idx} overlapped: {prev}, {cur}")
        gaps.append(gap)
    return (min(gaps), max(gaps)) if gaps else (0.0, 0.0)


def read_lock_times(times_dir: Path) -> ty.List[LockTimes]:
    """Read the `lock-times-<idx>` files that `thds-fastlock --out-times` appends to."""
    windows = list()
    for path in sorted(times_dir.glob("lock-times-*")):
        idx = int(path.name.rpartition("-")[2])
        for line in path.read_text().splitlines():
            after_acquire, before_release = map(float, line.split(","))
            assert after_acquire < before_release, f"{path} has a window that ends before it starts"
            windows.append(LockTimes(after_acquire, before_release, idx))
    return windows


def report(windows: ty.Sequence[LockTimes]) -> None:
    if not windows:
        logger.warning("No lock windows were recorded")
        return
    smallest_gap, biggest_gap = check_no_overlaps(windows)
    holders = len({w.idx for w in windows})
    logger.info(
        f"{len(windows)} windows from {holders} holders, none overlapping."
        f" Gaps between holders ranged from {smallest_gap:.4f}s to {biggest_gap:.4f}s"
    )


def validate_lock_times(times_dir: Path) -> None:
    report(read_lock_times(times_dir))


async def _take_turns(
    idx: int,
    locker: Locker,
    windows: ty.List[LockTimes],
    until: float,
    hold_s: float,
    max_lock_time: timedelta,
    refresh_time: timedelta,
) -> int:
    loop = asyncio.get_running_loop()
    turns = 0
    with log.logger_context(idx=f"{idx:03d}"):
        while loop.time() < until:
            async with locker.hold(max_lock_time, refresh_time):
                # wall clock, so that windows from other processes are comparable too.
                after_acquire = time.time()
                await asyncio.sleep(hold_s)
                before_release = time.time()
            windows.append(LockTimes(after_acquire, before_release, idx))
            check_no_overlaps(windows)
            turns += 1
            await asyncio.sleep(hold_s)  # give somebody else a chance
    return turns


async def contend(
    stores: ty.Sequence[SharedStore],
    lock_name: str,
    duration: timedelta,
    hold: timedelta,
    max_lock_time: timedelta = timedelta(seconds=5),
    refresh_time: timedelta = timedelta(seconds=1),
) -> ty.List[LockTimes]:
    """One contender per store. Every contender that starts a turn before `duration` is
    up finishes it, so each of them holds the lock at least once.

    Raises OverlappingLockTimes the moment any two recorded windows overlap.
    """
    windows: ty.List[LockTimes] = list()
    lockers = [Locker(lock_name, store, teardown=None) for store in stores]
    until = asyncio.get_running_loop().time() + duration.total_seconds()
    tasks = [
        asyncio.ensure_future(
            _take_turns(i, locker, windows, until, hold.total_seconds(), max_lock_time, refresh_time)
        )
        for i, locker in enumerate(lockers)
    ]
    try:
        turns = await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        for locker in lockers:
            locker.release()
    logger.info(f"Turns taken per contender: {turns}")
    return windows


def contender_stores(
    n: int, store_dir: ty.Optional[Path] = None, lag: timedelta = timedelta(0)
) -> ty.List[SharedStore]:
    if store_dir:
        return [DirectoryStore(store_dir) for _ in range(n)]
    shared = MemoryStore()
    return [shared.context(lag=lag) for _ in range(n)]


def main() -> None:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("n", type=int, nargs="?", default=4, help="How many contenders")
    parser.add_argument("--lock-name", default="stress")
    parser.add_argument("--minutes", type=float, default=1.0, help="Keep taking turns this long")
    parser.add_argument("--hold-s", type=float, default=0.5, help="How long each turn lasts")
    parser.add_argument(
        "--lag-ms", type=float, default=0.0, help="Write lag of each in-memory contender"
    )
    parser.add_argument(
        "--store-dir", type=Path, default=None, help="Share a DirectoryStore here instead"
    )
    parser.add_argument(
        "--check",
        type=Path,
        default=None,
        metavar="TIMES_DIR",
        help="Only check the lock-times files that thds-fastlock wrote to this directory",
    )
    args = parser.parse_args()

    if args.check:
        validate_lock_times(args.check)
        return

    stores = contender_stores(args.n, args.store_dir, timedelta(milliseconds=args.lag_ms))
    windows = asyncio.run(
        contend(stores, args.lock_name, timedelta(minutes=args.minutes), timedelta(seconds=args.hold_s))
    )
    report(windows)


if __name__ == "__main__":
    main()
