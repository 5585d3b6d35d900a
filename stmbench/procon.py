"""A producer and a consumer sharing a ring buffer, with various synchronisations."""

from __future__ import annotations

import argparse
import logging
import random
import threading
from collections.abc import Callable, Sequence

from stmbench.common import short_pause
from stmbench.locks import Lock

RUNS = 4096
DATA_TEXT_SIZE = 1024
BUFFER_SIZE = 1024
CONDITION_BUFFER_SIZE = 8

_log = logging.getLogger(__name__)

Exchange = tuple[list[bytes], list[bytes]]


class _AtomicInt:
    """An integer whose loads and additions are atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def load(self) -> int:
        with self._lock:
            return self._value

    def fetch_add(self, delta: int) -> int:
        with self._lock:
            old = self._value
            self._value = old + delta
            return old


def _validate(runs: int, buffer_size: int, text_size: int) -> None:
    if runs < 0:
        raise ValueError(f"negative number of runs: {runs}")
    if buffer_size < 1:
        raise ValueError(f"buffer needs at least one slot, got {buffer_size}")
    if text_size < 0:
        raise ValueError(f"negative text size: {text_size}")


def _generator(text_size: int) -> Callable[[], bytes]:
    rng = random.Random()
    return lambda: rng.randbytes(text_size)


def _run_pair(produce: Callable[[], None], consume: Callable[[], None]) -> None:
    producer = threading.Thread(target=produce)
    consumer = threading.Thread(target=consume)
    producer.start()
    consumer.start()
    consumer.join()
    producer.join()


def _setup(runs: int, buffer_size: int, text_size: int):
    empty = bytes(text_size)
    return [empty] * buffer_size, [empty] * runs, [empty] * runs, _generator(text_size)


def run_unsynchronized(
    runs: int = RUNS, buffer_size: int = BUFFER_SIZE, text_size: int = DATA_TEXT_SIZE
) -> Exchange:
    """Produce and consume without any synchronisation (incorrect).

    Return the data produced and the data consumed in each round.
    """
    _validate(runs, buffer_size, text_size)
    buffer, produced, consumed, make = _setup(runs, buffer_size, text_size)

    def produce() -> None:
        for r in range(runs):
            produced[r] = make()
            buffer[r % buffer_size] = produced[r]

    def consume() -> None:
        for r in range(runs):
            consumed[r] = buffer[r % buffer_size]

    _run_pair(produce, consume)
    return produced, consumed


def run_spin_locked(
    runs: int = RUNS, buffer_size: int = BUFFER_SIZE, text_size: int = DATA_TEXT_SIZE
) -> Exchange:
    """Busy-wait on a lock until the buffer slot is ready (correct)."""
    _validate(runs, buffer_size, text_size)
    buffer, produced, consumed, make = _setup(runs, buffer_size, text_size)
    lock = Lock()
    produced_until = 0
    consumed_until = 0

    def produce() -> None:
        nonlocal produced_until
        for r in range(runs):
            while True:
                lock.acquire()
                if consumed_until + buffer_size > r:
                    break
                lock.release()
                short_pause()
            _log.debug("can produce %d", r)
            produced[r] = make()
            buffer[r % buffer_size] = produced[r]
            produced_until += 1
            lock.release()

    def consume() -> None:
        nonlocal consumed_until
        for r in range(runs):
            while True:
                lock.acquire()
                if produced_until > r:
                    break
                lock.release()
                short_pause()
            _log.debug("can consume %d", r)
            consumed[r] = buffer[r % buffer_size]
            consumed_until += 1
            lock.release()

    _run_pair(produce, consume)
    return produced, consumed


def run_release_acquire(
    runs: int = RUNS, buffer_size: int = BUFFER_SIZE, text_size: int = DATA_TEXT_SIZE
) -> Exchange:
    """Busy-wait on atomic progress counters, without a lock (correct)."""
    _validate(runs, buffer_size, text_size)
    buffer, produced, consumed, make = _setup(runs, buffer_size, text_size)
    produced_until = _AtomicInt()
    consumed_until = _AtomicInt()

    def produce() -> None:
        for r in range(runs):
            while consumed_until.load() + buffer_size <= r:
                short_pause()
            _log.debug("can produce %d", r)
            produced[r] = make()
            buffer[r % buffer_size] = produced[r]
            produced_until.fetch_add(1)

    def consume() -> None:
        for r in range(runs):
            while produced_until.load() <= r:
                short_pause()
            _log.debug("can consume %d", r)
            consumed[r] = buffer[r % buffer_size]
            consumed_until.fetch_add(1)

    _run_pair(produce, consume)
    return produced, consumed


def run_condition(
    runs: int = RUNS,
    buffer_size: int = CONDITION_BUFFER_SIZE,
    text_size: int = DATA_TEXT_SIZE,
) -> Exchange:
    """Sleep on the lock until woken up by the other side (correct, no busy wait)."""
    _validate(runs, buffer_size, text_size)
    buffer, produced, consumed, make = _setup(runs, buffer_size, text_size)
    lock = Lock()
    produced_until = 0
    consumed_until = 0

    def produce() -> None:
        nonlocal produced_until
        for r in range(runs):
            lock.acquire()
            while consumed_until + buffer_size <= r:
                lock.wait()
            _log.debug("can produce %d", r)
            produced[r] = make()
            buffer[r % buffer_size] = produced[r]
            produced_until += 1
            lock.wake_up()
            lock.release()

    def consume() -> None:
        nonlocal consumed_until
        for r in range(runs):
            lock.acquire()
            while produced_until <= r:
                lock.wait()
            _log.debug("can consume %d", r)
            consumed[r] = buffer[r % buffer_size]
            consumed_until += 1
            lock.wake_up()
            lock.release()

    _run_pair(produce, consume)
    return produced, consumed


def first_mismatch(produced: Sequence[bytes], consumed: Sequence[bytes]) -> int | None:
    """Return the first round whose consumed data differs from the produced, or None."""
    if len(produced) != len(consumed):
        raise ValueError("produced and consumed rounds differ in number")
    return next((r for r, (a, b) in enumerate(zip(produced, consumed)) if a != b), None)


_VARIANTS: dict[str, tuple[Callable[[int, int, int], Exchange], int]] = {
    "unsynchronized": (run_unsynchronized, BUFFER_SIZE),
    "spin-locked": (run_spin_locked, BUFFER_SIZE),
    "release-acquire": (run_release_acquire, BUFFER_SIZE),
    "condition": (run_condition, CONDITION_BUFFER_SIZE),
}


def main(argv: Sequence[str] | None = None) -> int:
    """Run one producer/consumer variant and report the first wrong round, if any."""
    parser = argparse.ArgumentParser(prog="procon", description=__doc__)
    parser.add_argument("variant", choices=sorted(_VARIANTS))
    parser.add_argument("--runs", type=int, default=RUNS)
    parser.add_argument("--buffer-size", type=int, default=None)
    parser.add_argument("--text-size", type=int, default=DATA_TEXT_SIZE)
    args = parser.parse_args(argv)
    func, default_buffer = _VARIANTS[args.variant]
    buffer_size = default_buffer if args.buffer_size is None else args.buffer_size
    produced, consumed = func(args.runs, buffer_size, args.text_size)
    wrong = first_mismatch(produced, consumed)
    if wrong is None:
        print("Looks correct to me! :)")
    else:
        print(f"Consumed the wrong data on round {wrong}.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())