class FastLockError(Exception):
    pass  # pragma: no cover


class StoreUnavailable(FastLockError):
    """A get, set, or remove against the shared store raised.

    Recoverable - a failed acquire may simply be tried again.
    """


class ConcurrentClaimLost(FastLockError):
    """Another contender announced after us and its claim on the lease won.

    Never escapes the acquisition protocol, which simply starts over.
    """


class AcquireTimeout(FastLockError, TimeoutError):
    pass  # pragma: no cover
