"""Reader-writer lock used for the shared configuration and window cache.

Many readers may hold the lock at once; a writer holds it alone. Waiting
writers block new readers so that a rare administrative update is not
starved by the hot capture path. ``acquire_read(blocking=False)`` is the
non-blocking read used by the key-hook thread.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ReadWriteLock:
    """A writer-preferring reader-writer lock."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def _can_read(self) -> bool:
        return not self._writer and self._waiting_writers == 0

    def acquire_read(self, blocking: bool = True, timeout: float | None = None) -> bool:
        """Acquire a shared hold.

        Args:
            blocking: If False, return immediately instead of waiting.
            timeout: Maximum seconds to wait when blocking (None = forever).

        Returns:
            True if the read hold was acquired.
        """
        if not self._cond.acquire(blocking):
            return False
        try:
            if not blocking:
                if not self._can_read():
                    return False
            elif not self._cond.wait_for(self._can_read, timeout):
                return False
            self._readers += 1
            return True
        finally:
            self._cond.release()

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        """Context manager for a blocking shared hold."""
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        """Context manager for an exclusive hold."""
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
