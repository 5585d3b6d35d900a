"""Workloads run by the grader against a transactional memory library."""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from collections.abc import Callable

from stmbench.common import ASSERT_MODE, Barrier
from stmbench.transactional import (
    WORD_SIZE,
    Mode,
    RegionLike,
    SharedArray,
    SharedPointer,
    SharedWord,
    Transaction,
    TransactionalMemory,
    TransactionNotLastSegment,
    transactional,
)

Library = Callable[[int, int], RegionLike]

# Size of the segment header: account count, next segment, parity.
_HEADER_SIZE = 3 * WORD_SIZE


class Workload(ABC):
    """A workload owning one transactional memory built from a library.

    Each step returns an error message, or None when it succeeded.
    """

    def __init__(self, library: Library, align: int, size: int) -> None:
        self.library = library
        self.tm = TransactionalMemory(library, align, size)

    def close(self) -> None:
        """Destroy the shared memory of the workload."""
        self.tm.close()

    def __enter__(self) -> Workload:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def init(self) -> str | None:
        """(Re)initialise the shared memory."""

    @abstractmethod
    def run(self, uid: int, seed: int) -> str | None:
        """Run one worker's full share of the workload."""

    @abstractmethod
    def check(self, uid: int, seed: int) -> str | None:
        """Run one worker's share of the false negative-free check."""


class AccountSegment:
    """View of a segment of accounts in shared memory.

    Layout: account count, next segment pointer, parity, then the balances.
    """

    def __init__(self, tx: Transaction, address: int) -> None:
        self.count = SharedWord(tx, address)
        self.next = SharedPointer(tx, self.count.after())
        self.parity = SharedWord(tx, self.next.after())
        self.accounts = SharedArray(tx, self.parity.after())

    @staticmethod
    def size(nbaccounts: int) -> int:
        """Return the size in bytes of a segment holding ``nbaccounts`` accounts."""
        return _HEADER_SIZE + nbaccounts * WORD_SIZE

    @staticmethod
    def align() -> int:
        """Return the alignment in bytes required by a segment."""
        return WORD_SIZE


class WorkloadBank(Workload):
    """Bank workload: transfers, account (de)allocations and global audits."""

    def __init__(
        self,
        library: Library,
        nbworkers: int,
        nbtxperwrk: int,
        nbaccounts: int,
        expnbaccounts: int,
        init_balance: int,
        prob_long: float,
        prob_alloc: float,
    ) -> None:
        super().__init__(library, AccountSegment.align(), AccountSegment.size(nbaccounts))
        self.nbworkers = nbworkers
        self.nbtxperwrk = nbtxperwrk
        self.nbaccounts = nbaccounts
        self.expnbaccounts = expnbaccounts
        self.init_balance = init_balance
        self.prob_long = prob_long
        self.prob_alloc = prob_alloc
        self.barrier = Barrier(nbworkers)

    def _long_tx(self) -> tuple[bool, int | None]:
        """Sum every account; return consistency and the number of accounts seen."""

        def body(tx: Transaction) -> tuple[bool, int | None]:
            count = 0
            total = 0
            start = self.tm.start
            while start is not None:
                segment = AccountSegment(tx, start)
                segment_count = segment.count.read()
                count += segment_count
                total += segment.parity.read()
                for index in range(segment_count):
                    local = segment.accounts.read(index)
                    if local < 0:
                        return False, None
                    total += local
                start = segment.next.read()
            return total == self.init_balance * count, count

        return transactional(self.tm, Mode.READ_ONLY, body)

    def _alloc_tx(self, trigger: int) -> None:
        """Remove the last account if there are more than ``trigger``, else add one."""

        def body(tx: Transaction) -> None:
            count = 0
            prev: int | None = None
            start = self.tm.start
            while True:
                segment = AccountSegment(tx, start)
                segment_count = segment.count.read()
                count += segment_count
                segment_next = segment.next.read()
                if segment_next is None:
                    if count > trigger and count > 2:
                        segment_count -= 1
                        new_parity = (
                            segment.parity.read()
                            + segment.accounts.read(segment_count)
                            - self.init_balance
                        )
                        if segment_count > 0:
                            segment.count.write(segment_count)
                            segment.parity.write(new_parity)
                        else:
                            if ASSERT_MODE and prev is None:
                                raise TransactionNotLastSegment()
                            prev_segment = AccountSegment(tx, prev)
                            prev_segment.next.free()
                            prev_segment.parity.write(prev_segment.parity.read() + new_parity)
                    elif segment_count < self.nbaccounts:
                        segment.accounts.write(segment_count, self.init_balance)
                        segment.count.write(segment_count + 1)
                    else:
                        address = segment.next.alloc(AccountSegment.size(self.nbaccounts))
                        next_segment = AccountSegment(tx, address)
                        next_segment.count.write(1)
                        next_segment.accounts.write(0, self.init_balance)
                    return
                prev = start
                start = segment_next

        transactional(self.tm, Mode.READ_WRITE, body)

    def _short_tx(self, send_id: int, recv_id: int) -> bool:
        """Move one unit between two accounts; False if an account does not exist."""

        def body(tx: Transaction) -> bool:
            send_left, recv_left = send_id, recv_id
            send_ptr: int | None = None
            recv_ptr: int | None = None
            start = self.tm.start
            while True:
                segment = AccountSegment(tx, start)
                segment_count = segment.count.read()
                if send_ptr is None:
                    if send_left < segment_count:
                        send_ptr = segment.accounts[send_left].address
                        if recv_ptr is not None:
                            break
                    else:
                        send_left -= segment_count
                if recv_ptr is None:
                    if recv_left < segment_count:
                        recv_ptr = segment.accounts[recv_left].address
                        if send_ptr is not None:
                            break
                    else:
                        recv_left -= segment_count
                start = segment.next.read()
                if start is None:
                    return False

            sender = SharedWord(tx, send_ptr)
            receiver = SharedWord(tx, recv_ptr)
            send_val = sender.read()
            if send_val > 0:
                sender.write(send_val - 1)
                receiver.write(receiver.read() + 1)
            return True

        return transactional(self.tm, Mode.READ_WRITE, body)

    def init(self) -> str | None:
        """Fill the first segment with accounts and check the first balance."""

        def fill(tx: Transaction) -> None:
            segment = AccountSegment(tx, self.tm.start)
            segment.count.write(self.nbaccounts)
            for index in range(self.nbaccounts):
                segment.accounts.write(index, self.init_balance)

        def first_is_initial(tx: Transaction) -> bool:
            segment = AccountSegment(tx, self.tm.start)
            return segment.accounts.read(0) == self.init_balance

        transactional(self.tm, Mode.READ_WRITE, fill)
        if not transactional(self.tm, Mode.READ_ONLY, first_is_initial):
            return (
                "Violated consistency (check that committed writes in shared memory "
                "get visible to the following transactions' reads)"
            )
        return None

    def run(self, uid: int, seed: int) -> str | None:
        """Run ``nbtxperwrk`` random transactions, then a final audit."""
        rng = random.Random(seed)
        count = self.nbaccounts
        for _ in range(self.nbtxperwrk):
            if rng.random() < self.prob_long:
                consistent, seen = self._long_tx()
                if not consistent:
                    return "Violated isolation or atomicity"
                count = seen
            elif rng.random() < self.prob_alloc:
                self._alloc_tx(int(rng.gammavariate(self.expnbaccounts, 1.0)))
            else:
                while not self._short_tx(rng.randint(0, count - 1), rng.randint(0, count - 1)):
                    pass
        consistent, _ = self._long_tx()
        if not consistent:
            return "Violated isolation or atomicity"
        return None

    def check(self, uid: int, seed: int) -> str | None:
        """Check that concurrent transactions decrease a counter sequentially."""
        nbtxperwrk = 100

        def read_counter(tx: Transaction) -> int:
            return SharedWord(tx, self.tm.start).read()

        self.barrier.sync()
        if uid == 0:
            init_counter = nbtxperwrk * self.nbworkers

            def set_counter(tx: Transaction) -> None:
                SharedWord(tx, self.tm.start).write(init_counter)

            transactional(self.tm, Mode.READ_WRITE, set_counter)
            if transactional(self.tm, Mode.READ_ONLY, read_counter) != init_counter:
                self.barrier.sync()
                self.barrier.sync()
                return "Violated consistency during initialization"

        self.barrier.sync()
        for _ in range(nbtxperwrk):
            last = transactional(self.tm, Mode.READ_ONLY, read_counter)

            def decrement(tx: Transaction, last: int = last) -> bool:
                counter = SharedWord(tx, self.tm.start)
                value = counter.read()
                if value > last:
                    return False
                counter.write(value - 1)
                return True

            if not transactional(self.tm, Mode.READ_WRITE, decrement):
                self.barrier.sync()
                return "Violated consistency, isolation or atomicity"

        self.barrier.sync()
        if uid == 0 and transactional(self.tm, Mode.READ_ONLY, read_counter) != 0:
            return "Violated consistency"
        return None