"""Acquire a lock in a shared directory, hold it for a while, then release it.

Run several of these at once against the same directory to watch them take turns.
"""

import argparse
import asyncio
import time
import typing as ty
from datetime import timedelta
from pathlib import Path

from . import acquire, handle, refresh
from .stores import DirectoryStore


def _writer(out_times_path: Path) -> ty.Callable[[float, float], None]:
    handle.logger.info(f"Will write Lock Times to {out_times_path}")
    out_times_path.parent.mkdir(parents=True, exist_ok=True)

    def write_times(after_acquired: float, before_released: float) -> None:
        handle.logger.info(f"..........appending {after_acquired},{before_released}")
        with out_times_path.open("a") as f:
            f.write(f"{after_acquired},{before_released}\n")

    return write_times


async def _hold_once(
    locker: handle.Locker,
    hold_once_acquired_s: float,
    max_lock_time: timedelta,
    refresh_time: timedelta,
    write_times: ty.Callable[[float, float], None],
) -> None:
    await locker.acquire(max_lock_time, refresh_time)
    # we're using time, not timeit.default_timer, because we care about time
    # differences between multiple processes on the same system, so we can compare
    # them afterward.
    when_lock_acquired = time.time()
    await asyncio.sleep(hold_once_acquired_s)  # the lease refreshes itself meanwhile.
    before_release = time.time()
    locker.release()
    write_times(when_lock_acquired, before_release)


def acquire_and_hold_once(
    store_dir: Path,
    lock_name: str,
    hold_once_acquired_s: float,
    out_times_path: ty.Optional[Path],
    max_lock_time: timedelta = timedelta(seconds=5),
    refresh_time: timedelta = timedelta(seconds=1),
) -> None:
    if out_times_path:
        write_times = _writer(out_times_path)
    else:
        write_times = lambda x, y: None  # noqa: E731

    # we want more verbose logging when using the CLI.
    for module in (acquire, handle, refresh):
        module.logger.debug = module.logger.info  # type: ignore

    # released below, so there is nothing to leave registered with atexit.
    locker = handle.Locker(lock_name, DirectoryStore(store_dir), teardown=None)
    handle.logger.info(f"Beginning lock acquisition on {lock_name} in {store_dir}")
    try:
        asyncio.run(_hold_once(locker, hold_once_acquired_s, max_lock_time, refresh_time, write_times))
    finally:
        locker.release()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("store_dir", type=Path, help="Directory shared by all contenders")
    parser.add_argument("lock_name", help="Name of the lock")
    parser.add_argument(
        "--hold-once-acquired-s",
        "-t",
        type=float,
        default=20.0,
        help="Time in seconds to hold the lock once acquired.",
    )
    parser.add_argument(
        "--max-lock-time-s",
        type=float,
        default=5.0,
        help="A lease not refreshed for this long is considered abandoned.",
    )
    parser.add_argument(
        "--refresh-s", type=float, default=1.0, help="How often to refresh the lease while held."
    )
    parser.add_argument(
        "--out-times",
        type=Path,
        default=None,
        help="Write out the periods of time the lock was fully held (after acquire, before release) to this file.",
    )

    args = parser.parse_args()

    acquire_and_hold_once(
        args.store_dir,
        args.lock_name,
        args.hold_once_acquired_s,
        args.out_times,
        max_lock_time=timedelta(seconds=args.max_lock_time_s),
        refresh_time=timedelta(seconds=args.refresh_s),
    )


if __name__ == "__main__":
    main()
