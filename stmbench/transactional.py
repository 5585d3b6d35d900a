"""Transactions over a shared memory region, and typed views of shared words."""

from __future__ import annotations

import enum
import struct
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

from stmbench.common import ASSERT_MODE, MAX_SIDE_TIME, GradingError, bounded_run
from stmbench.region import INVALID_TX, Alloc, Region, RegionError

T = TypeVar("T")

WORD_SIZE = 8
_SIGNED = struct.Struct("<q")
_UNSIGNED = struct.Struct("<Q")


class TransactionError(GradingError):
    """Transaction manager exception."""

    default_message = "transaction manager exception"


class TransactionAlign(TransactionError):
    default_message = "incorrect alignment detected before transactional operation"


class TransactionReadOnly(TransactionError):
    default_message = "tried to write/alloc/free using a read-only transaction"


class TransactionCreate(TransactionError):
    default_message = "shared memory region creation failed"


class TransactionBegin(TransactionError):
    default_message = "transaction begin failed"


class TransactionAlloc(TransactionError):
    default_message = "memory allocation failed (insufficient memory)"


class TransactionRetry(TransactionError):
    default_message = "transaction aborted and can be retried"


class TransactionNotLastSegment(TransactionError):
    default_message = "trying to deallocate the first segment"


class SharedError(GradingError):
    """Operation in shared memory exception."""

    default_message = "operation in shared memory exception"


class SharedAlign(SharedError):
    default_message = "address in shared memory is not properly aligned for the specified type"


class SharedOverflow(SharedError):
    default_message = "index is past array length"


class SharedDoubleAlloc(SharedError):
    default_message = "(probable) double allocation detected before transactional operation"


class SharedDoubleFree(SharedError):
    default_message = "double free detected before transactional operation"


class RegionLike(Protocol):
    """What a transactional library's shared region must provide."""

    start: int

    def destroy(self) -> None: ...
    def begin(self, read_only: bool) -> int: ...
    def end(self, tx: int) -> bool: ...
    def read(self, tx: int, source: int, size: int) -> bytes: ...
    def write(self, tx: int, data: bytes, target: int) -> Any: ...
    def alloc(self, tx: int, size: int) -> int: ...
    def free(self, tx: int, address: int) -> Any: ...


def _is_abort(err: RegionError) -> bool:
    return err.status is Alloc.ABORT


class TransactionalMemory:
    """One shared memory region created through a transactional library.

    ``library`` is called as ``library(size, align)`` and returns the region.
    A region signals that a transaction must abort by raising a
    :class:`RegionError` whose status is ``Alloc.ABORT``.
    """

    def __init__(
        self,
        library: Callable[[int, int], RegionLike] = Region,
        align: int = WORD_SIZE,
        size: int = WORD_SIZE,
    ) -> None:
        if ASSERT_MODE and (align <= 0 or align & (align - 1) or size % align):
            raise TransactionAlign()
        self.size = size
        self.align = align
        created: list[RegionLike] = []

        def create() -> None:
            try:
                created.append(library(size, align))
            except RegionError as err:
                raise TransactionCreate() from err

        bounded_run(
            MAX_SIDE_TIME,
            create,
            "The transactional library takes too long creating the shared memory",
        )
        self._region = created[0]
        self.start: int = self._region.start

    def close(self) -> None:
        """Destroy the shared memory region."""
        bounded_run(
            MAX_SIDE_TIME,
            self._region.destroy,
            "The transactional library takes too long destroying the shared memory",
        )

    def __enter__(self) -> TransactionalMemory:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def begin(self, read_only: bool) -> int:
        """Begin a transaction; return its identifier, INVALID_TX on failure."""
        return self._region.begin(read_only)

    def end(self, tx: int) -> bool:
        """End a transaction; return whether it committed."""
        return bool(self._region.end(tx))

    def read(self, tx: int, source: int, size: int) -> bytes | None:
        """Read shared memory; None means the transaction must abort."""
        try:
            return bytes(self._region.read(tx, source, size))
        except RegionError as err:
            if _is_abort(err):
                return None
            raise

    def write(self, tx: int, data: bytes, target: int) -> bool:
        """Write shared memory; return whether the transaction can continue."""
        try:
            return self._region.write(tx, data, target) is not False
        except RegionError as err:
            if _is_abort(err):
                return False
            raise

    def alloc(self, tx: int, size: int) -> tuple[Alloc, int | None]:
        """Allocate a segment; return the status and the new address."""
        try:
            return Alloc.SUCCESS, self._region.alloc(tx, size)
        except RegionError as err:
            if err.status in (Alloc.ABORT, Alloc.NOMEM):
                return err.status, None
            raise

    def free(self, tx: int, address: int) -> bool:
        """Free a segment; return whether the transaction can continue."""
        try:
            return self._region.free(tx, address) is not False
        except RegionError as err:
            if _is_abort(err):
                return False
            raise


class Mode(enum.Enum):
    """Transaction mode."""

    READ_WRITE = False
    READ_ONLY = True


class Transaction:
    """One transaction over a transactional memory.

    Used as a context manager, the transaction ends when the block is left.
    """

    def __init__(self, tm: TransactionalMemory, mode: Mode) -> None:
        self.tm = tm
        self.read_only = bool(mode.value)
        self.aborted = False
        self._ended = False
        self._tx = tm.begin(self.read_only)
        if self._tx == INVALID_TX:
            raise TransactionBegin()

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        elif not self.aborted and not self._ended:
            self._ended = True
            self.tm.end(self._tx)

    def commit(self) -> None:
        """End the transaction, raising TransactionRetry if it did not commit."""
        if self._ended or self.aborted:
            return
        self._ended = True
        if not self.tm.end(self._tx):
            raise TransactionRetry()

    def _abort(self) -> TransactionRetry:
        self.aborted = True
        return TransactionRetry()

    def _check_writable(self) -> None:
        if ASSERT_MODE and self.read_only:
            raise TransactionReadOnly()

    def read(self, source: int, size: int) -> bytes:
        """Read ``size`` bytes of shared memory at ``source``."""
        data = self.tm.read(self._tx, source, size)
        if data is None:
            raise self._abort()
        return data

    def write(self, data: bytes, target: int) -> None:
        """Write ``data`` to shared memory at ``target``."""
        self._check_writable()
        if not self.tm.write(self._tx, data, target):
            raise self._abort()

    def alloc(self, size: int) -> int:
        """Allocate a shared segment of ``size`` bytes and return its address."""
        self._check_writable()
        status, address = self.tm.alloc(self._tx, size)
        if status is Alloc.SUCCESS:
            return address
        if status is Alloc.NOMEM:
            raise TransactionAlloc()
        raise self._abort()

    def free(self, address: int) -> None:
        """Free the shared segment starting at ``address``."""
        self._check_writable()
        if not self.tm.free(self._tx, address):
            raise self._abort()


def _check_alignment(tx: Transaction, address: int) -> None:
    if ASSERT_MODE and (address % tx.tm.align or address % WORD_SIZE):
        raise SharedAlign()


class SharedWord:
    """A signed machine word in shared memory, accessed through a transaction."""

    def __init__(self, tx: Transaction, address: int) -> None:
        _check_alignment(tx, address)
        self.tx = tx
        self.address = address

    def read(self) -> int:
        """Return a private copy of the word."""
        return _SIGNED.unpack(self.tx.read(self.address, WORD_SIZE))[0]

    def write(self, value: int) -> None:
        """Store ``value`` in the word."""
        self.tx.write(_SIGNED.pack(value), self.address)

    def after(self) -> int:
        """Return the address of the first byte after the word."""
        return self.address + WORD_SIZE


class SharedPointer(SharedWord):
    """A pointer in shared memory; the null pointer reads as None."""

    def read(self) -> int | None:
        value = _UNSIGNED.unpack(self.tx.read(self.address, WORD_SIZE))[0]
        return value or None

    def write(self, value: int | None) -> None:
        self.tx.write(_UNSIGNED.pack(value or 0), self.address)

    def alloc(self, size: int = 0) -> int:
        """Allocate a segment, store its address here and return it."""
        if ASSERT_MODE and self.read() is not None:
            raise SharedDoubleAlloc()
        address = self.tx.alloc(size if size > 0 else WORD_SIZE)
        self.write(address)
        return address

    def free(self) -> None:
        """Free the segment pointed to, then store the null pointer."""
        target = self.read()
        if ASSERT_MODE and target is None:
            raise SharedDoubleFree()
        self.tx.free(target)
        self.write(None)


class SharedArray:
    """An array of signed words in shared memory."""

    def __init__(self, tx: Transaction, address: int) -> None:
        _check_alignment(tx, address)
        self.tx = tx
        self.address = address

    def read(self, index: int) -> int:
        """Return a private copy of the cell at ``index``."""
        return self[index].read()

    def write(self, index: int, value: int) -> None:
        """Store ``value`` in the cell at ``index``."""
        self[index].write(value)

    def __getitem__(self, index: int) -> SharedWord:
        return SharedWord(self.tx, self.address + index * WORD_SIZE)

    def after(self, length: int) -> int:
        """Return the first byte after an array of ``length`` cells."""
        return self.address + length * WORD_SIZE


def transactional(
    tm: TransactionalMemory, mode: Mode, func: Callable[[Transaction], T]
) -> T:
    """Run ``func`` in a transaction, repeating it until it commits."""
    while True:
        try:
            with Transaction(tm, mode) as tx:
                return func(tx)
        except TransactionRetry:
            continue