"""Grading of transactional memory libraries on the bank workload."""

from __future__ import annotations

import enum
import os
import random
import sys
import threading
from collections.abc import Callable, Sequence

from stmbench.common import (
    INVALID_TICK,
    BoundedOverrun,
    Chrono,
    GradingError,
    Latch,
    Unreachable,
    short_pause,
)
from stmbench.region import Region
from stmbench.transactional import RegionLike
from stmbench.workload import Workload, WorkloadBank

# Transactional libraries that can be named on the command line.
LIBRARIES: dict[str, Callable[[int, int], RegionLike]] = {"reference": Region}


class _Status(enum.Enum):
    WAIT = "wait"  # workers waiting for each other, run as soon as all ready
    RUN = "run"  # workers running, no failure yet
    ABORT = "abort"  # workers running, at least one failure
    DONE = "done"  # workers done, all succeeded
    FAIL = "fail"  # workers done, at least one failure
    QUIT = "quit"  # workers must terminate


class Sync:
    """Synchronisation between the master and its worker threads."""

    def __init__(self, nbworkers: int) -> None:
        self.nbworkers = nbworkers
        self._ready_lock = threading.Lock()
        self._nbready = 0
        self._status = _Status.DONE
        self._errmsg: str | None = None
        self._runtime = Chrono()
        self._donelatch = Latch()

    def master_notify(self) -> None:
        """Start a synchronised run in every worker."""
        self._status = _Status.WAIT
        self._runtime.start()

    def master_join(self) -> None:
        """Tell every worker to terminate."""
        self._status = _Status.QUIT

    def master_wait(self, maxtick: int = INVALID_TICK) -> Chrono | str:
        """Wait for every worker to finish its run.

        Return the accumulated runtime on success, or an error message.
        Raise BoundedOverrun if ``maxtick`` nanoseconds elapse first.
        """
        if not self._donelatch.wait(maxtick):
            raise BoundedOverrun(
                "Transactional library takes too long to process the transactions"
            )
        status = self._status
        if status is _Status.DONE:
            return Chrono(self._runtime.total)
        if status is _Status.FAIL:
            return self._errmsg
        raise Unreachable(
            "Master woke after raised latch, no timeout, but unexpected status"
        )

    def worker_wait(self) -> bool:
        """Wait until the next run; return False if the worker must quit."""
        while True:
            status = self._status
            if status is _Status.WAIT:
                break
            if status is _Status.QUIT:
                return False
            short_pause()
        with self._ready_lock:
            self._nbready += 1
            last = self._nbready == self.nbworkers
            if last:
                self._nbready = 0
        if last:
            self._status = _Status.RUN
        else:
            while True:
                short_pause()
                if self._status in (_Status.RUN, _Status.ABORT):
                    break
        return True

    def worker_notify(self, error: str | None) -> None:
        """Report the end of a worker's run, with its error message if any."""
        if error:
            self._errmsg = error
            self._status = _Status.ABORT
        with self._ready_lock:
            self._nbready += 1
            last = self._nbready == self.nbworkers
            if last:
                self._nbready = 0
        if last:
            self._status = _Status.FAIL if self._status is _Status.ABORT else _Status.DONE
            self._runtime.stop()
            self._donelatch.raise_()


def _random_seed() -> int:
    return random.SystemRandom().getrandbits(32)


def measure(
    workload: Workload,
    nbthreads: int,
    nbrepeats: int,
    seed: int,
    maxtick_init: int,
    maxtick_perf: int,
    maxtick_chck: int,
) -> tuple[str | None, int, int | None, int]:
    """Run the workload in ``nbthreads`` threads and time it.

    Return the error message (None if none), the initialisation time, the
    median of the ``nbrepeats`` performance runs and the check time, in ns.
    Times that were not measured are INVALID_TICK (None for the median).
    """
    sync = Sync(nbthreads)
    cerr_lock = threading.Lock()

    def worker(uid: int) -> None:
        try:
            if not sync.worker_wait():
                return
            sync.worker_notify(workload.init())
            for count in range(nbrepeats):
                if not sync.worker_wait():
                    return
                sync.worker_notify(workload.run(uid, seed + nbthreads * count + uid))
            if not sync.worker_wait():
                return
            sync.worker_notify(workload.check(uid, _random_seed()))
            if not sync.worker_wait():
                return
            raise Unreachable("unexpected worker iteration after checks")
        except Exception as err:
            sync.worker_notify("Internal worker exception(s)")
            with cerr_lock:
                print("⎪⎧ *** EXCEPTION ***", file=sys.stderr)
                print(f"⎪⎩ {err}", file=sys.stderr)

    threads = [
        threading.Thread(target=worker, args=(uid,), daemon=True)
        for uid in range(nbthreads)
    ]
    for thread in threads:
        thread.start()

    def step(maxtick: int) -> tuple[str | None, int]:
        sync.master_notify()
        result = sync.master_wait(maxtick)
        if isinstance(result, Chrono):
            return None, result.total
        return result, INVALID_TICK

    time_init = INVALID_TICK
    median: int | None = None
    time_chck = INVALID_TICK
    try:
        error, time_init = step(maxtick_init)
        if error is None:
            times: list[int] = []
            for _ in range(nbrepeats):
                error, tick = step(maxtick_perf)
                if error is not None:
                    break
                times.append(tick)
            else:
                if times:
                    median = sorted(times)[nbrepeats // 2]
                error, time_chck = step(maxtick_chck)
    except BaseException:
        sync.master_join()
        raise
    sync.master_join()
    for thread in threads:
        thread.join()
    return error, time_init, median, time_chck


def _scaled(factor: int, tick: int) -> int:
    scaled = factor * tick
    return scaled + 1 if scaled == INVALID_TICK else scaled


def main(argv: Sequence[str] | None = None) -> int:
    """Grade the named libraries; the first one is the reference."""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        if len(args) < 2:
            print(
                "Usage: grading <seed> <reference library path> <tested library path>..."
            )
            return 1
        nbworkers = os.cpu_count() or 16
        nbtxperwrk = 200000 // nbworkers
        nbaccounts = 32 * nbworkers
        expnbaccounts = 256 * nbworkers
        init_balance = 100
        prob_long = 0.5
        prob_alloc = 0.01
        nbrepeats = 7
        seed = int(args[0], 10)
        clk_res = Chrono.get_resolution()
        slow_factor = 16

        print(f"⎧ #worker threads:     {nbworkers}")
        print(f"⎪ #TX per worker:      {nbtxperwrk}")
        print(f"⎪ #repetitions:        {nbrepeats}")
        print(f"⎪ Initial #accounts:   {nbaccounts}")
        print(f"⎪ Expected #accounts:  {expnbaccounts}")
        print(f"⎪ Initial balance:     {init_balance}")
        print(f"⎪ Long TX probability: {prob_long}")
        print(f"⎪ Allocation TX prob.: {prob_alloc}")
        print(f"⎪ Slow trigger factor: {slow_factor}")
        if clk_res == INVALID_TICK:
            print("⎪ Clock resolution:    <unknown>")
        else:
            print(f"⎪ Clock resolution:    {clk_res} ns")
        print(f"⎩ Seed value:          {seed}")

        reference = 0.0
        pertxdiv = float(nbworkers) * float(nbtxperwrk)
        maxtick_init = INVALID_TICK
        maxtick_perf = INVALID_TICK
        maxtick_chck = INVALID_TICK
        for name in args[1:]:
            label = " (reference)" if maxtick_init == INVALID_TICK else ""
            print(f"⎧ Evaluating '{name}'{label}...")
            library = LIBRARIES.get(name)
            if library is None:
                raise GradingError("unable to load a transaction library")
            bank = WorkloadBank(
                library, nbworkers, nbtxperwrk, nbaccounts, expnbaccounts,
                init_balance, prob_long, prob_alloc,
            )
            try:
                error, tick_init, tick_perf, tick_chck = measure(
                    bank, nbworkers, nbrepeats, seed,
                    maxtick_init, maxtick_perf, maxtick_chck,
                )
            except Exception as err:
                # Workers may still be running inside the library: stop here.
                print("⎪ *** EXCEPTION ***", file=sys.stderr)
                print(f"⎩ {err}", file=sys.stderr)
                return 2
            try:
                if error:
                    print(f"⎩ {error}")
                    return 1
                perf = float(tick_perf)
                line = f"⎪ Total user execution time: {perf / 1000000.0:g} ms"
                if maxtick_init == INVALID_TICK:
                    maxtick_init = _scaled(slow_factor, tick_init)
                    maxtick_perf = _scaled(slow_factor, tick_perf)
                    maxtick_chck = _scaled(slow_factor, tick_chck)
                    reference = perf
                else:
                    line += f" -> {reference / perf:g} speedup"
                print(line)
                print(f"⎩ Average TX execution time: {perf / pertxdiv:g} ns")
            finally:
                bank.close()
        return 0
    except Exception as err:
        print("⎧ *** EXCEPTION ***", file=sys.stderr)
        print(f"⎩ {err}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())