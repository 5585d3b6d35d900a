import threading
import time

import pytest

from stmbench.region import (
    INVALID_TX,
    READ_ONLY_TX,
    READ_WRITE_TX,
    UINTPTR_MAX,
    Alloc,
    Region,
    RegionError,
)


def test_begin_ids_match_interface_constants():
    region = Region(8, 8)
    ro = region.begin(True)
    assert ro == UINTPTR_MAX - 10
    assert ro != INVALID_TX
    region.end(ro)
    rw = region.begin(False)
    assert rw == UINTPTR_MAX - 11
    assert rw != INVALID_TX
    region.end(rw)


def test_region_properties_and_zeroed_start():
    region = Region(64, 8)
    assert region.size == 64
    assert region.align == 8
    assert region.start % 8 == 0
    assert region.start != 0
    tx = region.begin(True)
    assert region.read(tx, region.start, 64) == bytes(64)
    assert region.end(tx) is True


def test_begin_returns_transaction_kinds():
    region = Region(16, 8)
    ro = region.begin(True)
    assert ro == READ_ONLY_TX
    region.end(ro)
    rw = region.begin(False)
    assert rw == READ_WRITE_TX
    region.end(rw)


def test_write_then_read_round_trip():
    region = Region(32, 8)
    tx = region.begin(False)
    payload = (12345).to_bytes(8, "little")
    region.write(tx, payload, region.start + 8)
    assert region.read(tx, region.start + 8, 8) == payload
    assert region.read(tx, region.start, 8) == bytes(8)
    assert region.end(tx)


def test_invalid_alignment_rejected():
    with pytest.raises(RegionError):
        Region(24, 3)
    with pytest.raises(RegionError):
        Region(24, 0)


def test_out_of_range_access_raises():
    region = Region(16, 8)
    tx = region.begin(False)
    with pytest.raises(RegionError):
        region.read(tx, region.start + 16, 8)
    with pytest.raises(RegionError):
        region.write(tx, bytes(8), region.start + 12)
    with pytest.raises(RegionError):
        region.read(tx, 0, 8)
    region.end(tx)


def test_alloc_gives_aligned_zeroed_distinct_segment():
    region = Region(16, 8)
    tx = region.begin(False)
    first = region.alloc(tx, 24)
    second = region.alloc(tx, 24)
    assert first % 8 == 0 and second % 8 == 0
    assert len({region.start, first, second}) == 3
    assert region.read(tx, first, 24) == bytes(24)
    region.write(tx, b"\x01" * 24, first)
    assert region.read(tx, second, 24) == bytes(24)
    assert region.read(tx, first, 24) == b"\x01" * 24
    region.end(tx)


def test_free_releases_segment():
    region = Region(16, 8)
    tx = region.begin(False)
    segment = region.alloc(tx, 16)
    region.free(tx, segment)
    with pytest.raises(RegionError):
        region.free(tx, segment)
    region.end(tx)


def test_free_first_segment_rejected():
    region = Region(16, 8)
    tx = region.begin(False)
    with pytest.raises(RegionError):
        region.free(tx, region.start)
    region.end(tx)


def test_negative_alloc_reports_nomem():
    region = Region(16, 8)
    tx = region.begin(False)
    with pytest.raises(RegionError) as info:
        region.alloc(tx, -8)
    assert info.value.status is Alloc.NOMEM
    assert info.value.status == 2
    region.end(tx)


def test_destroy_disables_region():
    region = Region(16, 8)
    region.destroy()
    with pytest.raises(RegionError):
        region.begin(True)


def test_read_write_transaction_is_exclusive():
    region = Region(8, 8)
    rw = region.begin(False)
    observed = []

    def reader():
        tx = region.begin(True)
        observed.append(region.read(tx, region.start, 8))
        region.end(tx)

    t = threading.Thread(target=reader)
    t.start()
    time.sleep(0.05)
    assert observed == []
    value = (7).to_bytes(8, "little")
    region.write(rw, value, region.start)
    region.end(rw)
    t.join(timeout=2)
    assert observed == [value]


def test_concurrent_increments_are_atomic():
    region = Region(8, 8)

    def work():
        for _ in range(200):
            tx = region.begin(False)
            current = int.from_bytes(region.read(tx, region.start, 8), "little")
            region.write(tx, (current + 1).to_bytes(8, "little"), region.start)
            region.end(tx)

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    tx = region.begin(True)
    total = int.from_bytes(region.read(tx, region.start, 8), "little")
    region.end(tx)
    assert total == 4 * 200