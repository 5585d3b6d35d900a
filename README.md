# stmbench

A small toolkit for experimenting with software transactional memory and
thread synchronization in Python. It uses only the standard library.

## What is inside

- `stmbench.locks`: `Lock` is an exclusive lock with `wait()` and
  `wake_up()`. `SharedLock` is a reader/writer lock with `acquire()` /
  `release()` for exclusive holds and `acquire_shared()` /
  `release_shared()` for shared holds. It also has the `exclusive()` and
  `shared()` context managers. A waiting exclusive owner goes before new
  shared owners.
- `stmbench.region`: `Region(size, align)` is a coarse-grained, lock-based
  shared memory region. Addresses are plain integers. Read-only transactions
  run together and a read-write transaction runs alone. `read`, `write`,
  `alloc` and `free` work on byte ranges and segments. Failures raise
  `RegionError`, and its `status` may hold an `Alloc` value (`SUCCESS`,
  `ABORT`, `NOMEM`). The first segment, at `region.start`, cannot be freed.
- `stmbench.common`: `Chrono` accumulates time in nanoseconds, `Latch` is a
  waitable flag, `Barrier` is a reusable spin barrier and `bounded_run`
  calls a function with a time limit. The grader's exceptions
  (`GradingError`, `Unreachable`, `Bounded`, `BoundedOverrun`) are here as
  well.
- `stmbench.transactional`: `TransactionalMemory` builds a region from a
  library callable. `Transaction` is a context manager that commits when its
  block is left. `SharedWord`, `SharedPointer` and `SharedArray` are views of
  signed 64-bit words in shared memory. `transactional(tm, mode, func)` runs
  `func` again until its transaction commits.
- `stmbench.workload`: `WorkloadBank` keeps bank accounts in linked shared
  segments (`AccountSegment`). Its `run` mixes long read-only audits, account
  allocations and deallocations, and one-unit transfers. Its `init` and
  `check` steps test consistency. Each step returns an error message, or
  `None`.
- `stmbench.grading`: `measure` runs a workload in several threads kept in
  step by `Sync`. It returns the error message, the initialization time, the
  median of the repeated runs and the check time. `main` is the grading
  command.
- `stmbench.counters`, `stmbench.elections`, `stmbench.procon`: shared
  counters, leader elections and producer/consumer exchanges. Each comes in
  broken and correct variants.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Using the transactional memory

```python
from stmbench.region import Region

region = Region(64, 8)
tx = region.begin(read_only=False)
region.write(tx, (42).to_bytes(8, "little"), region.start)
region.end(tx)

tx = region.begin(read_only=True)
value = int.from_bytes(region.read(tx, region.start, 8), "little")
region.end(tx)
region.destroy()
```

With the higher-level helpers:

```python
from stmbench.region import Region
from stmbench.transactional import Mode, SharedWord, TransactionalMemory, transactional

with TransactionalMemory(Region, 8, 64) as tm:
    transactional(tm, Mode.READ_WRITE, lambda tx: SharedWord(tx, tm.start).write(7))
    value = transactional(tm, Mode.READ_ONLY, lambda tx: SharedWord(tx, tm.start).read())
```

## Commands

The grader takes a seed and one or more library names. The first library
is the reference. The later ones are timed against it and run with time
limits of 16 times the reference's times:

```
stmbench-grading 42 reference reference
```

Started without arguments, it prints its usage line and exits with status 1.
It uses one worker thread per CPU and 200000 transactions in total per run,
repeated 7 times, so a full run takes a while.

The synchronization demonstrations each take a variant name and report
whether the threads stayed consistent:

```
stmbench-counters racy|locked|copy|atomic [--runs N] [--threads N]
stmbench-elections racy|locked|register|cas [--runs N] [--threads N]
stmbench-procon unsynchronized|spin-locked|release-acquire|condition [--runs N] [--buffer-size N] [--text-size N]
```

The counter and election defaults (4096 × 256 rounds on 4 threads) are slow
in Python. Pass a smaller `--runs` for a quick try. The broken variants may
or may not show a failure on a given run. Whether they do depends on how the
interpreter schedules threads.

## What it does not do

The only transactional library the grader knows is the built-in `Region`,
named `reference`. Any other name ends the command with
"unable to load a transaction library". The grader cannot load compiled
libraries or libraries from file paths. To grade another implementation,
add a callable `library(size, align)` that returns a region-like object to
`stmbench.grading.LIBRARIES`, or pass it straight to `WorkloadBank` and
`measure`.