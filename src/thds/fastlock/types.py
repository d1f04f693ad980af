import typing as ty


class SharedStore(ty.Protocol):
    """The only thing contenders share. There is no compare-and-swap; all mutual
    exclusion emerges from the order of plain gets and sets.

    A write must be visible to reads from the same context immediately, and to reads
    from every other context within the verification delay.
    """

    def get(self, key: str) -> ty.Optional[str]:
        ...  # pragma: no cover

    def set(self, key: str, value: str) -> None:
        ...  # pragma: no cover

    def remove(self, key: str) -> None:
        """Removing an absent key is not an error."""


class Lease(ty.NamedTuple):
    holder_id: str
    refreshed_at_ms: int

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.refreshed_at_ms

    def is_fresh(self, now_ms: int, max_lock_time_ms: int) -> bool:
        return self.age_ms(now_ms) < max_lock_time_ms


Teardown = ty.Callable[[ty.Callable[[], None]], ty.Any]
# something like atexit.register - called once with the function to run on teardown.

Clock = ty.Callable[[], int]
# unix milliseconds. must be comparable across every context sharing the store.
