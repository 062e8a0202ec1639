"""
Cross-platform file locking utilities for repoman.

Lock files guard a repository working tree against concurrent jobs. Because
the lock lives on disk, a handle created after the in-memory object graph was
discarded can still see that a job is running and who owns it.
"""

import os
import time
import uuid
import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional, Tuple

from .platform import is_process_running

# An unreadable lock file younger than this may still be written by its owner
UNPARSEABLE_LOCK_GRACE = 5.0


class FileLock:
    """
    Exclusive lock backed by a lock file that appears with its content in place.

    The owner line (pid and thread id) is written to a temporary file which is
    then hard-linked to the lock path; the link fails if the lock exists, so a
    competitor never sees a half-written lock. Locks left behind by a dead
    process are treated as stale and reclaimed.
    """

    def __init__(self, lock_file_path: Path, timeout: float = 30.0, poll_delay: float = 0.05):
        """
        Initialize file lock.

        Args:
            lock_file_path: Path to the lock file
            timeout: Maximum time to wait for lock acquisition (seconds); 0 tries once
            poll_delay: Delay between acquisition attempts
        """
        self.lock_file_path = Path(lock_file_path)
        self.timeout = timeout
        self.poll_delay = poll_delay
        self.logger = logging.getLogger('repoman.file_lock')
        self._lock_acquired = False
        self._content = ""

    def acquire(self) -> bool:
        """
        Acquire the file lock.

        Returns:
            True if lock was acquired, False if timeout occurred
        """
        deadline = time.monotonic() + self.timeout

        while True:
            if self._try_create():
                self._lock_acquired = True
                self.logger.debug(f"Acquired lock: {self.lock_file_path}")
                return True

            if time.monotonic() >= deadline:
                break
            time.sleep(self.poll_delay)

        self.logger.debug(f"Failed to acquire lock {self.lock_file_path} within {self.timeout}s")
        return False

    def _try_create(self, reclaim: bool = True) -> bool:
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        content = f"locked_by_pid_{os.getpid()}_thread_{threading.get_ident()}\n{uuid.uuid4().hex}\n"

        fd, temp_path = tempfile.mkstemp(
            dir=str(self.lock_file_path.parent),
            prefix=f".{self.lock_file_path.name}.",
            suffix=".tmp"
        )
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(content)
            os.link(temp_path, self.lock_file_path)
        except FileExistsError:
            # Retry once if the existing lock turned out to be stale
            if reclaim and self._cleanup_stale_lock():
                return self._try_create(reclaim=False)
            return False
        finally:
            os.unlink(temp_path)

        self._content = content
        return True

    def _cleanup_stale_lock(self) -> bool:
        """
        Remove the lock file if its owner process is gone.

        The lock is moved aside before it is deleted, so two processes
        reclaiming the same stale lock cannot delete each other's new lock.

        Returns:
            True if a stale lock was removed
        """
        try:
            content = self.lock_file_path.read_text()
        except FileNotFoundError:
            return True
        except OSError:
            return False

        if not _is_stale(self.lock_file_path, content):
            return False

        aside = self.lock_file_path.with_name(f".{self.lock_file_path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.lock_file_path, aside)
        except FileNotFoundError:
            return True
        except OSError as e:
            self.logger.warning(f"Could not move stale lock {self.lock_file_path} aside: {e}")
            return False

        try:
            moved = aside.read_text()
            if moved != content:
                # Another owner took the lock between the read and the rename; give it back
                try:
                    os.link(aside, self.lock_file_path)
                except FileExistsError:
                    self.logger.warning(f"Lock {self.lock_file_path} was replaced while being reclaimed")
                return False
        finally:
            aside.unlink()

        self.logger.warning(f"Cleaned up stale lock file: {self.lock_file_path}")
        return True

    def release(self) -> bool:
        """
        Release the file lock.

        Returns:
            True if lock was released, False otherwise
        """
        if not self._lock_acquired:
            return True

        try:
            if self.lock_file_path.read_text() == self._content:
                self.lock_file_path.unlink()
                self.logger.debug(f"Released lock: {self.lock_file_path}")
            else:
                self.logger.warning(f"Lock {self.lock_file_path} no longer belongs to this owner")
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.error(f"Error releasing lock {self.lock_file_path}: {e}")
            return False

        self._lock_acquired = False
        return True

    def is_locked(self) -> bool:
        """Check if the lock is currently held by this instance."""
        return self._lock_acquired

    def __enter__(self):
        if not self.acquire():
            raise TimeoutError(f"Could not acquire lock {self.lock_file_path} within {self.timeout}s")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


def _parse_owner(content: str) -> Optional[Tuple[int, int]]:
    try:
        first_line = content.splitlines()[0]
        pid_part, thread_part = first_line.split("locked_by_pid_")[1].split("_thread_")
        return int(pid_part), int(thread_part)
    except (ValueError, IndexError):
        return None


def _lock_age(lock_file_path: Path) -> float:
    try:
        return time.time() - lock_file_path.stat().st_mtime
    except OSError:
        return float("inf")


def _is_stale(lock_file_path: Path, content: str) -> bool:
    owner = _parse_owner(content)
    if owner is None:
        return _lock_age(lock_file_path) >= UNPARSEABLE_LOCK_GRACE
    return not is_process_running(owner[0])


def read_lock_owner(lock_file_path: Path) -> Optional[Tuple[int, int]]:
    """
    Read the (pid, thread id) recorded in a lock file.

    Returns:
        The owner tuple, or None when the file is missing or unparseable
    """
    try:
        content = Path(lock_file_path).read_text()
    except OSError:
        return None
    return _parse_owner(content)


def is_lock_held(lock_file_path: Path) -> bool:
    """
    Check whether a live process currently holds the given lock file.

    A freshly created lock whose owner cannot be read yet counts as held.
    """
    lock_file_path = Path(lock_file_path)
    try:
        content = lock_file_path.read_text()
    except OSError:
        return False
    return not _is_stale(lock_file_path, content)
