import struct

import pytest

from stmbench.region import INVALID_TX, Alloc, Region, RegionError
from stmbench.transactional import (
    Mode,
    SharedArray,
    SharedPointer,
    SharedWord,
    Transaction,
    TransactionAlloc,
    TransactionBegin,
    TransactionCreate,
    TransactionRetry,
    TransactionalMemory,
    transactional,
)


class _FakeRegion:
    """In-memory region that can be told to fail operations."""

    def __init__(self, size, align):
        self.start = 64
        self.memory = bytearray(size)
        self.fail_reads = 0
        self.fail_ends = 0
        self.alloc_status = None
        self.refuse_begin = False
        self.begins = 0
        self.ends = 0
        self.modes = []

    def destroy(self):
        self.memory = bytearray()

    def begin(self, read_only):
        if self.refuse_begin:
            return INVALID_TX
        self.modes.append(read_only)
        self.begins += 1
        return self.begins

    def end(self, tx):
        self.ends += 1
        if self.fail_ends:
            self.fail_ends -= 1
            return False
        return True

    def read(self, tx, source, size):
        if self.fail_reads:
            self.fail_reads -= 1
            raise RegionError("conflict", status=Alloc.ABORT)
        offset = source - self.start
        return bytes(self.memory[offset:offset + size])

    def write(self, tx, data, target):
        offset = target - self.start
        self.memory[offset:offset + len(data)] = data

    def alloc(self, tx, size):
        raise RegionError("refused", status=self.alloc_status)

    def free(self, tx, address):
        return None


@pytest.fixture
def tm():
    memory = TransactionalMemory(Region, 8, 64)
    yield memory
    memory.close()


def test_memory_reports_geometry(tm):
    assert tm.size == 64
    assert tm.align == 8
    data = transactional(tm, Mode.READ_ONLY, lambda tx: tx.read(tm.start, 64))
    assert data == bytes(64)


def test_write_then_read_round_trip(tm):
    payload = b"abcdefgh"
    transactional(tm, Mode.READ_WRITE, lambda tx: tx.write(payload, tm.start + 8))
    got = transactional(tm, Mode.READ_ONLY, lambda tx: tx.read(tm.start + 8, 8))
    assert got == payload


def test_shared_word_round_trip_negative(tm):
    transactional(tm, Mode.READ_WRITE, lambda tx: SharedWord(tx, tm.start).write(-42))
    value = transactional(tm, Mode.READ_ONLY, lambda tx: SharedWord(tx, tm.start).read())
    assert value == -42
    raw = transactional(tm, Mode.READ_ONLY, lambda tx: tx.read(tm.start, 8))
    assert struct.unpack("<q", raw)[0] == -42


def test_shared_word_after(tm):
    with Transaction(tm, Mode.READ_ONLY) as tx:
        assert SharedWord(tx, tm.start).after() == tm.start + 8


def test_shared_array_cells_are_consecutive_words(tm):
    def fill(tx):
        array = SharedArray(tx, tm.start)
        for index, value in enumerate([5, 6, 7]):
            array.write(index, value)

    transactional(tm, Mode.READ_WRITE, fill)
    with Transaction(tm, Mode.READ_ONLY) as tx:
        array = SharedArray(tx, tm.start)
        assert [array.read(i) for i in range(3)] == [5, 6, 7]
        assert array[2].read() == SharedWord(tx, tm.start + 16).read()
        assert array.after(3) == tm.start + 24


def test_pointer_alloc_and_free(tm):
    with Transaction(tm, Mode.READ_ONLY) as tx:
        assert SharedPointer(tx, tm.start).read() is None

    address = transactional(tm, Mode.READ_WRITE, lambda tx: SharedPointer(tx, tm.start).alloc(16))
    stored = transactional(tm, Mode.READ_ONLY, lambda tx: SharedPointer(tx, tm.start).read())
    assert stored == address
    fresh = transactional(tm, Mode.READ_ONLY, lambda tx: tx.read(address, 16))
    assert fresh == bytes(16)

    transactional(tm, Mode.READ_WRITE, lambda tx: SharedPointer(tx, tm.start).free())
    after = transactional(tm, Mode.READ_ONLY, lambda tx: SharedPointer(tx, tm.start).read())
    assert after is None
    with pytest.raises(RegionError):
        transactional(tm, Mode.READ_ONLY, lambda tx: tx.read(address, 8))


def test_creation_failure_raises():
    with pytest.raises(TransactionCreate):
        TransactionalMemory(Region, 3, 12)


def test_begin_failure_raises():
    tm = TransactionalMemory(_FakeRegion, 8, 32)
    tm._region.refuse_begin = True
    with pytest.raises(TransactionBegin):
        Transaction(tm, Mode.READ_WRITE)


def test_aborted_reads_are_retried():
    tm = TransactionalMemory(_FakeRegion, 8, 32)
    region = tm._region
    region.fail_reads = 2
    value = transactional(tm, Mode.READ_ONLY, lambda tx: SharedWord(tx, tm.start).read())
    assert value == 0
    assert region.begins == 3
    assert region.ends == 1


def test_failed_commit_is_retried():
    tm = TransactionalMemory(_FakeRegion, 8, 32)
    region = tm._region
    region.fail_ends = 1
    transactional(tm, Mode.READ_WRITE, lambda tx: SharedWord(tx, tm.start).write(9))
    assert region.begins == 2
    assert region.ends == 2


def test_read_abort_marks_transaction():
    tm = TransactionalMemory(_FakeRegion, 8, 32)
    tm._region.fail_reads = 1
    tx = Transaction(tm, Mode.READ_ONLY)
    with pytest.raises(TransactionRetry):
        tx.read(tm.start, 8)
    assert tx.aborted is True


def test_alloc_nomem_raises():
    tm = TransactionalMemory(_FakeRegion, 8, 32)
    tm._region.alloc_status = Alloc.NOMEM
    tx = Transaction(tm, Mode.READ_WRITE)
    with pytest.raises(TransactionAlloc):
        tx.alloc(8)
    assert tx.aborted is False


def test_alloc_abort_raises_retry():
    tm = TransactionalMemory(_FakeRegion, 8, 32)
    tm._region.alloc_status = Alloc.ABORT
    tx = Transaction(tm, Mode.READ_WRITE)
    with pytest.raises(TransactionRetry):
        tx.alloc(8)
    assert tx.aborted is True


def test_other_exceptions_propagate_and_end_transaction():
    tm = TransactionalMemory(_FakeRegion, 8, 32)

    def boom(tx):
        raise ValueError("boom")

    with pytest.raises(ValueError):
        transactional(tm, Mode.READ_WRITE, boom)
    assert tm._region.ends == 1


def test_mode_selects_transaction_kind():
    tm = TransactionalMemory(_FakeRegion, 8, 32)
    Transaction(tm, Mode.READ_ONLY).commit()
    Transaction(tm, Mode.READ_WRITE).commit()
    modes = [bool(getattr(m, "value", m)) for m in tm._region.modes]
    assert modes == [True, False]
    assert Mode.READ_ONLY.value is True
    assert Mode.READ_WRITE.value is False


def test_close_destroys_region():
    tm = TransactionalMemory(Region, 8, 16)
    tm.close()
    with pytest.raises(RegionError):
        tm.begin(True)