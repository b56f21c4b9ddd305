"""
Run lock — at most one run per host at a time.

The lock is an exclusive ``flock`` held on an open descriptor of the
lock file for the whole run. The kernel drops it when the owner exits,
however it exits, so a crashed run never leaves a live lock behind.
The pid written into the file is informational: it names the holder
in ConcurrentRunDetected and flags a previous run that did not release.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from hostplan.core.errors import ConcurrentRunDetected

logger = logging.getLogger(__name__)


def try_lock_exclusively(fileno: int) -> bool:
    try:
        fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as err:
        if err.errno in (errno.EAGAIN, errno.EWOULDBLOCK):
            return False
        raise
    return True


class RunLock:
    """Exclusive lock on the run lock file. Usable as a context manager."""

    def __init__(self, path: Path, run_id: str = ""):
        self._path = path
        self._run_id = run_id
        self._fd: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            ConcurrentRunDetected: Another run holds the lock.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            fd = os.open(self._path, os.O_CREAT | os.O_RDWR, 0o644)
            if not try_lock_exclusively(fd):
                os.close(fd)
                raise ConcurrentRunDetected(str(self._path), self.owner_pid())
            # A releasing owner may have unlinked the file we opened.
            if _same_file(fd, self._path):
                break
            os.close(fd)

        previous = self.owner_pid()
        if previous is not None:
            logger.warning("Reclaiming stale run lock %s (owner pid %s gone)", self._path, previous)

        payload = {
            "pid": os.getpid(),
            "run_id": self._run_id,
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps(payload).encode("utf-8"))
        self._fd = fd
        logger.debug("Acquired run lock %s", self._path)

    def release(self) -> None:
        if self._fd is None:
            return
        # Unlink while still locked, then drop the lock with the descriptor.
        self._path.unlink(missing_ok=True)
        os.close(self._fd)
        self._fd = None
        logger.debug("Released run lock %s", self._path)

    def owner_pid(self) -> int | None:
        """Pid recorded in the lock file, if readable."""
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return int(data["pid"])
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def _same_file(fd: int, path: Path) -> bool:
    try:
        on_disk = os.stat(path)
    except FileNotFoundError:
        return False
    opened = os.fstat(fd)
    return (opened.st_dev, opened.st_ino) == (on_disk.st_dev, on_disk.st_ino)
