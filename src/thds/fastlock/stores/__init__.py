from .directory import DirectoryStore  # noqa: F401
from .memory import MemoryContext, MemoryStore  # noqa: F401
