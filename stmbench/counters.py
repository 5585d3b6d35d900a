"""A shared counter incremented by several threads, correctly and incorrectly."""

from __future__ import annotations

import argparse
import threading
from collections.abc import Callable, Sequence

from stmbench.locks import Lock

RUNS = 4096 * 256
THREADS = 4


class _AtomicInt:
    """An integer whose individual loads, stores and additions are atomic."""

    def __init__(self, value: int = 0) -> None:
        self._lock = threading.Lock()
        self._value = value

    def load(self) -> int:
        with self._lock:
            return self._value

    def store(self, value: int) -> None:
        with self._lock:
            self._value = value

    def fetch_add(self, delta: int) -> int:
        with self._lock:
            old = self._value
            self._value = old + delta
            return old


def _validate(runs: int, threads: int) -> None:
    if runs < 0:
        raise ValueError(f"negative number of runs: {runs}")
    if threads < 1:
        raise ValueError(f"at least one thread is needed, got {threads}")


def _run_threads(threads: int, target: Callable[[], None]) -> None:
    workers = [threading.Thread(target=target) for _ in range(threads)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()


def count_racy(runs: int = RUNS, threads: int = THREADS) -> int:
    """Increment a plain shared counter without synchronisation (incorrect)."""
    _validate(runs, threads)
    counter = [0]

    def count() -> None:
        for _ in range(runs):
            counter[0] += 1

    _run_threads(threads, count)
    return counter[0]


def count_locked(runs: int = RUNS, threads: int = THREADS) -> int:
    """Increment the counter while holding a lock (correct)."""
    _validate(runs, threads)
    lock = Lock()
    counter = 0

    def count() -> None:
        nonlocal counter
        for _ in range(runs):
            with lock:
                counter += 1

    _run_threads(threads, count)
    return counter


def count_copy(runs: int = RUNS, threads: int = THREADS) -> int:
    """Load then store an atomic register (incorrect: not one atomic step)."""
    _validate(runs, threads)
    counter = _AtomicInt()

    def count() -> None:
        for _ in range(runs):
            read_copy = counter.load()
            counter.store(read_copy + 1)

    _run_threads(threads, count)
    return counter.load()


def count_atomic(runs: int = RUNS, threads: int = THREADS) -> int:
    """Increment the counter with an atomic fetch-and-add (correct)."""
    _validate(runs, threads)
    counter = _AtomicInt()

    def count() -> None:
        for _ in range(runs):
            counter.fetch_add(1)

    _run_threads(threads, count)
    return counter.load()


_VARIANTS: dict[str, Callable[[int, int], int]] = {
    "racy": count_racy,
    "locked": count_locked,
    "copy": count_copy,
    "atomic": count_atomic,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Run one counting variant and report whether it counted correctly."""
    parser = argparse.ArgumentParser(prog="counters", description=__doc__)
    parser.add_argument("variant", choices=sorted(_VARIANTS))
    parser.add_argument("--runs", type=int, default=RUNS)
    parser.add_argument("--threads", type=int, default=THREADS)
    args = parser.parse_args(argv)
    counter = _VARIANTS[args.variant](args.runs, args.threads)
    if counter != args.runs * args.threads:
        print(f"Didn't count so well. :/, found {counter}")
    else:
        print(f"Counted up to {counter}.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())