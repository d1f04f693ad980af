"""Take turns at a critical section across processes that share nothing but a
key-value store.
"""

from thds.core import meta

from .errors import (  # noqa: F401
    AcquireTimeout,
    ConcurrentClaimLost,
    FastLockError,
    StoreUnavailable,
)
from .handle import Locker  # noqa: F401
from .stores import DirectoryStore, MemoryStore  # noqa: F401
from .types import Lease, SharedStore  # noqa: F401

__version__ = meta.get_version(__name__)
