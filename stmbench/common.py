"""Timing, synchronisation and bounded-execution helpers used by the grader."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta
from enum import Enum

# Whether to enable more safety checks.
ASSERT_MODE = False

# Maximum waiting time for initialisation and clean-ups, in seconds.
MAX_SIDE_TIME = 2.0

INVALID_TICK = 0xBADC0DE


class GradingError(Exception):
    """Root of the grader's exceptions."""

    default_message = "grading exception"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(self.default_message if message is None else message)


class Unreachable(GradingError):
    """Code that should never run was reached."""

    default_message = "unreachable code reached"


class Bounded(GradingError):
    """A bounded execution failed."""

    default_message = "bounded execution exception"


class BoundedOverrun(GradingError):
    """A bounded execution took longer than allowed."""

    default_message = "bounded execution overrun"


def _now() -> int:
    tick = time.monotonic_ns()
    return INVALID_TICK + 1 if tick == INVALID_TICK else tick


class Chrono:
    """Accumulates elapsed monotonic time, in nanoseconds."""

    INVALID_TICK = INVALID_TICK

    def __init__(self, tick: int = 0) -> None:
        self.total = tick
        self._local = _now()

    @staticmethod
    def get_resolution() -> int:
        """Return the clock resolution in nanoseconds, or INVALID_TICK if unknown."""
        try:
            resolution = time.get_clock_info("monotonic").resolution
        except (ValueError, OSError):
            return INVALID_TICK
        tick = max(1, round(resolution * 1_000_000_000))
        return INVALID_TICK + 1 if tick == INVALID_TICK else tick

    def start(self) -> None:
        """Start measuring a time segment."""
        self._local = _now()

    def delta(self) -> int:
        """Return the time elapsed since the segment started."""
        return _now() - self._local

    def stop(self) -> None:
        """Stop the current segment and add it to the total."""
        self.total += self.delta()

    def reset(self) -> None:
        """Reset the total to zero."""
        self.total = 0


class Latch:
    """A waitable flag that is reset by whoever waits it out."""

    def __init__(self, raised: bool = False) -> None:
        self._cv = threading.Condition(threading.Lock())
        self._raised = raised

    def raise_(self) -> None:
        """Raise the latch; does nothing if it is already raised."""
        with self._cv:
            self._raised = True
            self._cv.notify_all()

    def wait(self, maxtick: int = INVALID_TICK) -> bool:
        """Wait for the latch to be raised, then reset it.

        ``maxtick`` is the longest wait in nanoseconds, INVALID_TICK for none.
        Return whether the latch was raised in time.
        """
        with self._cv:
            if maxtick == INVALID_TICK:
                self._cv.wait_for(lambda: self._raised)
            elif not self._cv.wait_for(lambda: self._raised, maxtick / 1_000_000_000):
                return False
            self._raised = False
        return True


def short_pause() -> None:
    """Give up the processor for a short while."""
    time.sleep(0)


class _Mode(Enum):
    ENTER = "enter"
    LEAVE = "leave"


class Barrier:
    """Spin barrier on which a fixed number of threads synchronise, reusably."""

    def __init__(self, cardinal: int) -> None:
        if cardinal < 1:
            raise ValueError("a barrier needs at least one thread")
        self.cardinal = cardinal
        self._counter_lock = threading.Lock()
        self._step = 0
        self._mode = _Mode.ENTER

    def sync(self) -> None:
        """Block until every thread of the barrier has called ``sync``."""
        with self._counter_lock:
            self._step += 1
            last_in = self._step == self.cardinal
        if last_in:
            self._mode = _Mode.LEAVE
        else:
            while self._mode is not _Mode.LEAVE:
                short_pause()
        with self._counter_lock:
            self._step -= 1
            last_out = self._step == 0
        if last_out:
            self._mode = _Mode.ENTER
        else:
            while self._mode is not _Mode.ENTER:
                short_pause()


def bounded_run(
    duration: float | timedelta, func: Callable[[], object], message: str
) -> None:
    """Run ``func`` in a helper thread, raising BoundedOverrun if it outlasts ``duration``.

    ``duration`` is in seconds or a timedelta. An exception raised by ``func``
    is re-raised in the caller.
    """
    seconds = duration.total_seconds() if isinstance(duration, timedelta) else duration
    failure: list[BaseException] = []

    def runner() -> None:
        try:
            func()
        except BaseException as err:  # handed back to the caller
            failure.append(err)

    thread = threading.Thread(target=runner, daemon=True)
    thread.start()
    thread.join(seconds)
    if thread.is_alive():
        raise BoundedOverrun(message)
    if failure:
        raise failure[0]