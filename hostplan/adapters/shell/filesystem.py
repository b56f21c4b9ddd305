"""
Filesystem adapter — read, atomic write, remove.

Writes go to a temp file in the target directory and are renamed over
the target, so a crash never leaves a half-written config file behind.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path

from hostplan.adapters.base import Filesystem

logger = logging.getLogger(__name__)

DEFAULT_MODE = 0o644


class LocalFilesystem(Filesystem):
    """The local filesystem.

    Args:
        root: Optional prefix prepended to every absolute path. Lets a
            plan written for ``/etc/...`` be applied into a chroot or a
            test directory.
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root) if root else None

    @property
    def name(self) -> str:
        return "filesystem"

    def is_available(self) -> bool:
        return True

    def resolve(self, path: str) -> Path:
        target = Path(path)
        if self._root is not None:
            target = self._root / target.relative_to(target.anchor) if target.is_absolute() else self._root / target
        return target

    def read(self, path: str) -> bytes | None:
        target = self.resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None

    def mode(self, path: str) -> int | None:
        target = self.resolve(path)
        try:
            return stat.S_IMODE(target.stat().st_mode)
        except FileNotFoundError:
            return None

    def write(self, path: str, data: bytes, mode: int | None = None) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, mode if mode is not None else DEFAULT_MODE)
            tmp.replace(target)
            logger.debug("Wrote %d bytes to %s", len(data), target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def remove(self, path: str) -> None:
        self.resolve(path).unlink(missing_ok=True)
