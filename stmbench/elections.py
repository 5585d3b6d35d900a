"""Leader election rounds between threads, correctly and incorrectly synchronised."""

from __future__ import annotations

import argparse
import threading
from collections.abc import Callable, Sequence

from stmbench.locks import Lock

RUNS = 4096 * 256
THREADS = 4


class _AtomicArray:
    """An array whose individual cell operations are atomic."""

    def __init__(self, size: int) -> None:
        self._lock = threading.Lock()
        self._cells = [0] * size

    def load(self, index: int) -> int:
        with self._lock:
            return self._cells[index]

    def store(self, index: int, value: int) -> None:
        with self._lock:
            self._cells[index] = value

    def fetch_add(self, index: int, delta: int) -> int:
        with self._lock:
            old = self._cells[index]
            self._cells[index] = old + delta
            return old

    def compare_exchange(self, index: int, expected: int, desired: int) -> bool:
        with self._lock:
            if self._cells[index] != expected:
                return False
            self._cells[index] = desired
            return True

    def snapshot(self) -> list[int]:
        with self._lock:
            return list(self._cells)


def _validate(runs: int, threads: int) -> None:
    if runs < 0:
        raise ValueError(f"negative number of runs: {runs}")
    if threads < 1:
        raise ValueError(f"at least one thread is needed, got {threads}")


def _run_threads(threads: int, target: Callable[[int], None]) -> None:
    workers = [threading.Thread(target=target, args=(tid,)) for tid in range(1, threads + 1)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()


def elect_racy(runs: int = RUNS, threads: int = THREADS) -> tuple[list[int], list[int]]:
    """Check then set a plain leader slot (incorrect).

    Return the leader of each round and how many threads thought they won it.
    """
    _validate(runs, threads)
    leader = [0] * runs
    nb_leaders = _AtomicArray(runs)

    def elect(tid: int) -> None:
        for r in range(runs):
            if leader[r] == 0:
                leader[r] = tid
                nb_leaders.fetch_add(r, 1)

    _run_threads(threads, elect)
    return leader, nb_leaders.snapshot()


def elect_locked(runs: int = RUNS, threads: int = THREADS) -> tuple[list[int], list[int]]:
    """Check then set the leader slot while holding a lock (correct)."""
    _validate(runs, threads)
    lock = Lock()
    leader = [0] * runs
    nb_leaders = _AtomicArray(runs)

    def elect(tid: int) -> None:
        for r in range(runs):
            with lock:
                if leader[r] == 0:
                    leader[r] = tid
                    nb_leaders.fetch_add(r, 1)

    _run_threads(threads, elect)
    return leader, nb_leaders.snapshot()


def elect_register(runs: int = RUNS, threads: int = THREADS) -> tuple[list[int], list[int]]:
    """Check then set atomic registers (incorrect: the block is not atomic)."""
    _validate(runs, threads)
    leader = _AtomicArray(runs)
    nb_leaders = _AtomicArray(runs)

    def elect(tid: int) -> None:
        for r in range(runs):
            if leader.load(r) == 0:
                leader.store(r, tid)
                nb_leaders.fetch_add(r, 1)

    _run_threads(threads, elect)
    return leader.snapshot(), nb_leaders.snapshot()


def elect_cas(runs: int = RUNS, threads: int = THREADS) -> tuple[list[int], list[int]]:
    """Impose oneself as leader with a compare-and-swap (correct)."""
    _validate(runs, threads)
    leader = _AtomicArray(runs)
    nb_leaders = _AtomicArray(runs)

    def elect(tid: int) -> None:
        for r in range(runs):
            if leader.compare_exchange(r, 0, tid):
                nb_leaders.fetch_add(r, 1)

    _run_threads(threads, elect)
    return leader.snapshot(), nb_leaders.snapshot()


def first_failed_round(nb_leaders: Sequence[int]) -> int | None:
    """Return the first round that did not elect exactly one leader, or None."""
    return next((r for r, count in enumerate(nb_leaders) if count != 1), None)


_VARIANTS: dict[str, Callable[[int, int], tuple[list[int], list[int]]]] = {
    "racy": elect_racy,
    "locked": elect_locked,
    "register": elect_register,
    "cas": elect_cas,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Run one election variant and report the first failed round, if any."""
    parser = argparse.ArgumentParser(prog="elections", description=__doc__)
    parser.add_argument("variant", choices=sorted(_VARIANTS))
    parser.add_argument("--runs", type=int, default=RUNS)
    parser.add_argument("--threads", type=int, default=THREADS)
    args = parser.parse_args(argv)
    _, nb_leaders = _VARIANTS[args.variant](args.runs, args.threads)
    failed = first_failed_round(nb_leaders)
    if failed is None:
        print("Looks correct to me! :)")
    else:
        print(f"Leader election for round {failed} failed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())