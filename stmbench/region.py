"""A coarse-grained, lock-based transactional memory region."""

from __future__ import annotations

import bisect
import enum
import threading
from dataclasses import dataclass

from stmbench.locks import SharedLock

UINTPTR_MAX = (1 << 64) - 1
INVALID_TX = UINTPTR_MAX
READ_ONLY_TX = UINTPTR_MAX - 10
READ_WRITE_TX = UINTPTR_MAX - 11

# Addresses never exceed this bound.
MAX_ADDRESS = 1 << 48

_FIRST_BASE = 0x10000
_POINTER_SIZE = 8


class Alloc(enum.IntEnum):
    """Outcome of an allocation inside a transaction."""

    SUCCESS = 0  # allocation done, the transaction can continue
    ABORT = 1  # the transaction was aborted and can be retried
    NOMEM = 2  # no memory, but the transaction was not aborted


class RegionError(Exception):
    """A shared memory region operation failed."""

    def __init__(self, message: str, status: Alloc | None = None) -> None:
        super().__init__(message)
        self.status = status


def _is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def _align_up(value: int, align: int) -> int:
    return (value + align - 1) // align * align


@dataclass
class _Segment:
    base: int
    data: bytearray

    @property
    def end(self) -> int:
        return self.base + len(self.data)


class Region:
    """Shared memory region whose words are addressed by integers.

    Read-only transactions run concurrently; a read-write transaction runs
    alone. The first segment starts at ``start`` and cannot be freed.
    """

    def __init__(self, size: int, align: int) -> None:
        if not _is_power_of_two(align):
            raise RegionError(f"alignment {align} is not a power of two")
        if size < 0:
            raise RegionError(f"negative region size {size}")
        self.size = size
        self.align = align
        self._lock = SharedLock()
        self._table_lock = threading.Lock()
        self._segments: dict[int, _Segment] = {}
        self._bases: list[int] = []
        self._next_base = _FIRST_BASE
        self._destroyed = False
        self.start = self._place(size, align).base

    def _place(self, size: int, align: int) -> _Segment:
        base = _align_up(self._next_base, align)
        if base + size > MAX_ADDRESS:
            raise RegionError("address space exhausted", status=Alloc.NOMEM)
        segment = _Segment(base, bytearray(size))
        self._next_base = base + max(size, 1)
        self._segments[base] = segment
        bisect.insort(self._bases, base)
        return segment

    def _check_alive(self) -> None:
        if self._destroyed:
            raise RegionError("region has been destroyed")

    def _locate(self, address: int, size: int) -> tuple[_Segment, int]:
        with self._table_lock:
            index = bisect.bisect_right(self._bases, address) - 1
            if index < 0:
                raise RegionError(f"address {address:#x} is not in the region")
            segment = self._segments[self._bases[index]]
        if size < 0 or address + size > segment.end:
            raise RegionError(
                f"range {address:#x}+{size} is outside its segment"
            )
        return segment, address - segment.base

    def destroy(self) -> None:
        """Release every segment; the region can no longer be used."""
        with self._table_lock:
            self._segments.clear()
            self._bases.clear()
            self._destroyed = True

    def begin(self, read_only: bool) -> int:
        """Start a transaction and return its identifier."""
        self._check_alive()
        if read_only:
            self._lock.acquire_shared()
            return READ_ONLY_TX
        self._lock.acquire()
        return READ_WRITE_TX

    def end(self, tx: int) -> bool:
        """End a transaction; return whether it committed."""
        if tx == READ_ONLY_TX:
            self._lock.release_shared()
        else:
            self._lock.release()
        return True

    def read(self, tx: int, source: int, size: int) -> bytes:
        """Return ``size`` bytes of shared memory starting at ``source``."""
        self._check_alive()
        segment, offset = self._locate(source, size)
        return bytes(segment.data[offset:offset + size])

    def write(self, tx: int, data: bytes, target: int) -> None:
        """Copy ``data`` into shared memory starting at ``target``."""
        self._check_alive()
        payload = bytes(data)
        segment, offset = self._locate(target, len(payload))
        segment.data[offset:offset + len(payload)] = payload

    def alloc(self, tx: int, size: int) -> int:
        """Allocate a zeroed segment and return its address."""
        self._check_alive()
        if size < 0:
            raise RegionError(f"negative allocation size {size}", status=Alloc.NOMEM)
        align = max(self.align, _POINTER_SIZE)
        with self._table_lock:
            return self._place(size, align).base

    def free(self, tx: int, address: int) -> None:
        """Release a segment previously returned by :meth:`alloc`."""
        self._check_alive()
        if address == self.start:
            raise RegionError("the first segment cannot be freed")
        with self._table_lock:
            if address not in self._segments:
                raise RegionError(f"no segment starts at {address:#x}")
            del self._segments[address]
            self._bases.remove(address)