import threading
import time
from datetime import timedelta

import pytest

from stmbench.common import (
    INVALID_TICK,
    Barrier,
    Bounded,
    BoundedOverrun,
    Chrono,
    GradingError,
    Latch,
    Unreachable,
    bounded_run,
    short_pause,
)


def test_exception_default_messages():
    assert str(Unreachable()) == "unreachable code reached"
    assert str(Bounded()) == "bounded execution exception"
    assert str(BoundedOverrun()) == "bounded execution overrun"


def test_exception_custom_message_and_hierarchy():
    err = BoundedOverrun("too slow")
    assert str(err) == "too slow"
    assert isinstance(err, GradingError)
    assert isinstance(Unreachable(), GradingError)


def test_invalid_tick_constant():
    chrono = Chrono(INVALID_TICK)
    assert chrono.total == 0xBADC0DE
    assert Chrono.INVALID_TICK == INVALID_TICK


def test_chrono_initial_tick():
    assert Chrono(42).total == 42
    assert Chrono().total == 0


def test_chrono_accumulates_segments():
    chrono = Chrono()
    chrono.start()
    time.sleep(0.01)
    chrono.stop()
    first = chrono.total
    assert first >= 5_000_000
    chrono.start()
    time.sleep(0.01)
    chrono.stop()
    assert chrono.total > first


def test_chrono_delta_is_monotonic():
    chrono = Chrono()
    chrono.start()
    d1 = chrono.delta()
    short_pause()
    d2 = chrono.delta()
    assert 0 <= d1 <= d2


def test_chrono_reset():
    chrono = Chrono(1000)
    chrono.reset()
    assert chrono.total == 0


def test_chrono_resolution():
    res = Chrono.get_resolution()
    assert res > 0
    assert res != INVALID_TICK


def test_latch_initially_raised_is_reset_by_wait():
    latch = Latch(True)
    assert latch.wait(1_000_000) is True
    assert latch.wait(1_000_000) is False


def test_latch_times_out_when_not_raised():
    latch = Latch()
    assert latch.wait(5_000_000) is False


def test_latch_raise_wakes_waiter():
    latch = Latch()
    results = []
    waiter = threading.Thread(target=lambda: results.append(latch.wait()))
    waiter.start()
    time.sleep(0.02)
    latch.raise_()
    waiter.join(2)
    assert results == [True]
    assert latch.wait(1_000_000) is False


def test_latch_raise_twice_is_single_raise():
    latch = Latch()
    latch.raise_()
    latch.raise_()
    assert latch.wait(1_000_000) is True
    assert latch.wait(1_000_000) is False


def test_barrier_rejects_zero():
    with pytest.raises(ValueError):
        Barrier(0)


def test_barrier_single_thread_returns():
    barrier = Barrier(1)
    results = [barrier.sync() for _ in range(3)]
    assert results == [None, None, None]


def test_barrier_synchronises_rounds():
    nbworkers = 4
    rounds = 5
    barrier = Barrier(nbworkers + 1)
    arrivals = []
    guard = threading.Lock()
    observed = [[] for _ in range(nbworkers)]

    def worker(uid):
        for _ in range(rounds):
            with guard:
                arrivals.append(uid)
            barrier.sync()
            with guard:
                observed[uid].append(len(arrivals))
            barrier.sync()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(nbworkers)]
    for t in threads:
        t.start()
    main_observed = []
    for _ in range(rounds):
        result = barrier.sync()
        with guard:
            snapshot = len(arrivals)
        main_observed.append((result, snapshot))
        barrier.sync()
    for t in threads:
        t.join(10)
    expected = [nbworkers * (r + 1) for r in range(rounds)]
    assert main_observed == [(None, count) for count in expected]
    assert all(seen == expected for seen in observed)


def test_bounded_run_completes():
    done = []
    bounded_run(1.0, lambda: done.append(True), "slow")
    assert done == [True]


def test_bounded_run_accepts_timedelta():
    done = []
    bounded_run(timedelta(seconds=1), lambda: done.append(1), "slow")
    assert done == [1]


def test_bounded_run_overrun():
    with pytest.raises(BoundedOverrun, match="took too long"):
        bounded_run(0.01, lambda: time.sleep(0.5), "took too long")


def test_bounded_run_propagates_exception():
    def fail():
        raise Unreachable("boom")

    with pytest.raises(Unreachable, match="boom"):
        bounded_run(1.0, fail, "slow")