"""Cross-process exclusive lock on a lock file.

Uses msvcrt on Windows and fcntl elsewhere. By default ``acquire`` blocks
until the holder releases, so writers from separate queuectl processes (for
example ``enqueue`` while a worker pool is running) queue up instead of
failing. ``acquire(blocking=False)`` is a try-lock, used to allow a single
worker pool per data directory.
"""

import logging
import os
import platform
from typing import Optional

logger = logging.getLogger(__name__)


class FileLock:
    """Blocking OS-level lock on ``lock_path``.

    Example:
        >>> with FileLock("/path/to/jobs.json.lock"):
        ...     # read-modify-write the protected document
        ...     pass
    """

    def __init__(self, lock_path: str):
        self.lock_path = lock_path
        self._lock_fd: Optional[int] = None

    def acquire(self, blocking: bool = True) -> bool:
        """Acquire the lock.

        With ``blocking=False`` this returns False at once when another
        holder has it, instead of waiting.

        Raises:
            OSError: If the lock file cannot be opened or locked
        """
        fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR)
        try:
            if platform.system() == "Windows":
                import msvcrt

                os.lseek(fd, 0, os.SEEK_SET)
                if not blocking:
                    try:
                        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
                    except OSError:
                        os.close(fd)
                        return False
                else:
                    # LK_LOCK retries for ~10 seconds before raising
                    while True:
                        try:
                            msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                            break
                        except OSError:
                            logger.debug("Still waiting for lock %s", self.lock_path)
            else:
                import fcntl

                if not blocking:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    except BlockingIOError:
                        os.close(fd)
                        return False
                else:
                    fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError:
            os.close(fd)
            raise
        self._lock_fd = fd
        return True

    def release(self) -> None:
        """Release the lock. Safe to call when it was never acquired.

        The lock file itself is left in place; unlinking it would let a
        waiter lock an inode nobody else sees.
        """
        if self._lock_fd is None:
            return

        fd, self._lock_fd = self._lock_fd, None
        try:
            if platform.system() == "Windows":
                import msvcrt

                os.lseek(fd, 0, os.SEEK_SET)
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.warning("Error releasing file lock %s: %s", self.lock_path, e)
        finally:
            os.close(fd)

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
