"""Exclusive and shared (reader/writer) locks."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class Lock:
    """An exclusive lock that can also wait for and wake up other holders."""

    def __init__(self) -> None:
        self._cv = threading.Condition(threading.Lock())

    def acquire(self) -> bool:
        """Block until the lock is held by the caller."""
        return self._cv.acquire()

    def release(self) -> None:
        """Release the lock held by the caller."""
        self._cv.release()

    def wait(self) -> None:
        """Release the lock until woken up, then take it again."""
        self._cv.wait()

    def wake_up(self) -> None:
        """Wake up every thread waiting on this lock."""
        self._cv.notify_all()

    def __enter__(self) -> Lock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class SharedLock:
    """A lock held either by one exclusive owner or by many shared owners.

    Waiting exclusive owners take precedence over new shared owners.
    """

    def __init__(self) -> None:
        self._cv = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire(self) -> bool:
        """Block until the lock is held exclusively."""
        with self._cv:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cv.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        return True

    def release(self) -> None:
        """Release an exclusive hold."""
        with self._cv:
            if not self._writer:
                raise RuntimeError("shared lock is not held exclusively")
            self._writer = False
            self._cv.notify_all()

    def acquire_shared(self) -> bool:
        """Block until the lock is held in shared mode."""
        with self._cv:
            while self._writer or self._waiting_writers:
                self._cv.wait()
            self._readers += 1
        return True

    def release_shared(self) -> None:
        """Release a shared hold."""
        with self._cv:
            if self._readers == 0:
                raise RuntimeError("shared lock is not held in shared mode")
            self._readers -= 1
            if self._readers == 0:
                self._cv.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[SharedLock]:
        """Hold the lock exclusively for the duration of the block."""
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    @contextmanager
    def shared(self) -> Iterator[SharedLock]:
        """Hold the lock in shared mode for the duration of the block."""
        self.acquire_shared()
        try:
            yield self
        finally:
            self.release_shared()