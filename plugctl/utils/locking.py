"""Cross-process file locking.

Registry and cache-index updates are read-modify-write cycles. A
:class:`FileLock` held around each cycle keeps two plugctl processes (or two
worker threads) from overwriting each other's changes.

- Unix/Linux/macOS: ``fcntl.flock``
- Windows: ``msvcrt.locking``
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from types import TracebackType
from typing import IO

from plugctl.core.errors import ConflictError
from plugctl.utils.platform import is_windows

logger = logging.getLogger(__name__)

# flock locks belong to the open file description, so threads of one process
# also need a process-local lock per path.
_THREAD_LOCKS: dict[str, threading.RLock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def _thread_lock_for(path: Path) -> threading.RLock:
    key = os.path.abspath(path)
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _THREAD_LOCKS[key] = lock
        return lock


def _try_lock(handle: IO[str]) -> bool:
    """Attempt a non-blocking exclusive lock, returning False if it is held."""
    if is_windows():
        import msvcrt

        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
        except OSError:
            return False
        return True

    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _unlock(handle: IO[str]) -> None:
    if is_windows():
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        return

    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileLock:
    """Exclusive lock on ``<path>.lock``, usable as a context manager.

    Re-entrant within a thread: nested ``with`` blocks on the same lock
    object only acquire the OS lock once.
    """

    def __init__(self, path: Path, timeout: float = 10.0, poll_interval: float = 0.05):
        """Initialize the lock.

        Args:
            path: File being protected; the lock file is ``<path>.lock``
            timeout: Seconds to wait before giving up
            poll_interval: Seconds between acquisition attempts
        """
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._thread_lock = _thread_lock_for(self.lock_path)
        self._handle: IO[str] | None = None
        self._depth = 0

    def acquire(self) -> None:
        """Acquire the lock.

        Raises:
            ConflictError: If the lock is still held by another writer after
                ``timeout`` seconds
        """
        if not self._thread_lock.acquire(timeout=self.timeout):
            raise self._conflict()

        if self._depth > 0:
            self._depth += 1
            return

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_path, "a+", encoding="utf-8")
            deadline = time.monotonic() + self.timeout
            while not _try_lock(handle):
                if time.monotonic() >= deadline:
                    handle.close()
                    raise self._conflict()
                time.sleep(self.poll_interval)
        except BaseException:
            self._thread_lock.release()
            raise

        self._handle = handle
        self._depth = 1
        logger.debug("Acquired lock %s", self.lock_path)

    def release(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0 and self._handle is not None:
            try:
                _unlock(self._handle)
            finally:
                self._handle.close()
                self._handle = None
                logger.debug("Released lock %s", self.lock_path)
        self._thread_lock.release()

    def _conflict(self) -> ConflictError:
        return ConflictError(
            f"Timed out after {self.timeout}s waiting for lock {self.lock_path}",
            "LOCK_TIMEOUT",
            {"path": str(self.lock_path)},
        )

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
