import os
import typing as ty
from pathlib import Path

from thds.core import log
from thds.core.files import atomic_write_path
from thds.core.types import StrOrPath

logger = log.getLogger(__name__)


class DirectoryStore:
    """One file per key, inside a directory that every contending process can reach.

    Writes go to a temporary file that is then moved into place, so a reader sees either
    the old value or the new one, never a partial write.
    """

    def __init__(self, root: StrOrPath) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        assert key and os.sep not in key and key not in (".", ".."), f"Not a usable key: {key!r}"
        return self.root / key

    def get(self, key: str) -> ty.Optional[str]:
        try:
            return self._path(key).read_text()
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        with atomic_write_path(path) as temp_path:
            temp_path.write_text(value)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            logger.debug("%s was already absent", key)
