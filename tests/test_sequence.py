# SPDX-License-Identifier: MIT
"""Tests for the sequential counter allocator."""

import asyncio

import pytest

from conftest import FAST_RETRY
from idgen.engine.retry import Deadline, RetryPolicy
from idgen.engine.sequence import SequenceAllocator
from idgen.errors import AllocationTimeout, Cancelled, CapacityExhausted
from idgen.io_utils.store import InMemoryStateStore, JSONFileStateStore
from idgen.models import SequentialSource


def _source(**overrides) -> SequentialSource:
    spec = {"id": "seq", "name": "Seq", "identifier_type_id": "t", "max_length": 6}
    spec.update(overrides)
    return SequentialSource(**spec)


class ContendedStore(InMemoryStateStore):
    """Store whose counter is moved by another writer ``conflicts`` times."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.cas_calls = 0

    def compare_and_set_counter(self, source_id, expected, new):
        self.cas_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            # Another process wins the race.
            super().compare_and_set_counter(source_id, expected, (expected or 0) + 100)
            return False
        return super().compare_and_set_counter(source_id, expected, new)


@pytest.mark.asyncio
async def test_first_value_is_first_identifier_base() -> None:
    store = InMemoryStateStore()
    allocator = SequenceAllocator(store)
    source = _source(first_identifier_base=5)
    assert await allocator.next_value(source) == 5
    assert await allocator.next_value(source) == 6
    assert store.get_counter("seq") == 6


@pytest.mark.asyncio
async def test_zero_base_starts_at_zero() -> None:
    allocator = SequenceAllocator(InMemoryStateStore())
    assert await allocator.next_value(_source(first_identifier_base=0)) == 0


@pytest.mark.asyncio
async def test_concurrent_calls_are_unique() -> None:
    allocator = SequenceAllocator(InMemoryStateStore())
    source = _source()
    values = await asyncio.gather(*(allocator.next_value(source) for _ in range(200)))
    assert len(set(values)) == 200
    assert sorted(values) == list(range(1, 201))


@pytest.mark.asyncio
async def test_sequential_calls_are_monotonic() -> None:
    allocator = SequenceAllocator(InMemoryStateStore())
    source = _source()
    previous = -1
    for _ in range(50):
        value = await allocator.next_value(source)
        assert value > previous
        previous = value


@pytest.mark.asyncio
async def test_allocators_sharing_a_store_never_duplicate() -> None:
    """Two allocators stand in for two processes over one durable counter."""
    store = InMemoryStateStore()
    first = SequenceAllocator(store, retry=FAST_RETRY)
    second = SequenceAllocator(store, retry=FAST_RETRY)
    source = _source()
    values = await asyncio.gather(
        *(alloc.next_value(source) for alloc in [first, second] * 50)
    )
    assert len(set(values)) == 100


@pytest.mark.asyncio
async def test_contention_is_retried() -> None:
    store = ContendedStore(conflicts=2)
    allocator = SequenceAllocator(store, retry=FAST_RETRY)
    value = await allocator.next_value(_source())
    assert value == 201
    assert store.cas_calls == 3


@pytest.mark.asyncio
async def test_persistent_contention_raises_allocation_timeout() -> None:
    store = ContendedStore(conflicts=100)
    allocator = SequenceAllocator(
        store, retry=RetryPolicy(attempts=4, base=0.0001, cap=0.001, jitter=0.0)
    )
    with pytest.raises(AllocationTimeout):
        await allocator.next_value(_source())
    assert store.cas_calls == 4


@pytest.mark.asyncio
async def test_capacity_exhausted_does_not_advance_counter() -> None:
    store = InMemoryStateStore()
    allocator = SequenceAllocator(store)
    source = _source(prefix="A", min_length=3, max_length=3, first_identifier_base=98)
    assert await allocator.next_value(source) == 98
    assert await allocator.next_value(source) == 99
    with pytest.raises(CapacityExhausted):
        await allocator.next_value(source)
    assert store.get_counter("seq") == 99


@pytest.mark.asyncio
async def test_batches_leave_gaps_but_no_duplicates() -> None:
    store = InMemoryStateStore()
    source = _source()
    first = SequenceAllocator(store, batch_size=10)
    assert [await first.next_value(source) for _ in range(3)] == [1, 2, 3]
    assert store.get_counter("seq") == 10

    restarted = SequenceAllocator(store, batch_size=10)
    assert await restarted.next_value(source) == 11


@pytest.mark.asyncio
async def test_batch_is_clamped_to_capacity() -> None:
    store = InMemoryStateStore()
    source = _source(min_length=1, max_length=1, first_identifier_base=8)
    allocator = SequenceAllocator(store, batch_size=5)
    assert await allocator.next_value(source) == 8
    assert await allocator.next_value(source) == 9
    with pytest.raises(CapacityExhausted):
        await allocator.next_value(source)


@pytest.mark.asyncio
async def test_reserve_block_is_contiguous() -> None:
    store = InMemoryStateStore()
    allocator = SequenceAllocator(store)
    source = _source()
    assert await allocator.next_value(source) == 1
    block = await allocator.reserve_block(source, 5)
    assert list(block) == [2, 3, 4, 5, 6]
    assert await allocator.next_value(source) == 7


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_hold_lock() -> None:
    store = InMemoryStateStore()
    allocator = SequenceAllocator(store)
    source = _source()
    lock = allocator._lock_for(source.id)
    await lock.acquire()
    try:
        with pytest.raises(Cancelled):
            await allocator.next_value(source, Deadline(0.01))
    finally:
        lock.release()
    assert not lock.locked()
    assert await allocator.next_value(source) == 1


@pytest.mark.asyncio
async def test_waiter_cancelled_as_lock_frees_does_not_keep_it() -> None:
    allocator = SequenceAllocator(InMemoryStateStore())
    source = _source()
    lock = allocator._lock_for(source.id)
    await lock.acquire()
    waiter = asyncio.create_task(allocator.next_value(source, Deadline(10)))
    for _ in range(5):
        await asyncio.sleep(0)
    lock.release()
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert not lock.locked()
    assert await allocator.next_value(source, Deadline(1)) == 1


def test_peek_reports_next_start() -> None:
    store = InMemoryStateStore()
    allocator = SequenceAllocator(store)
    source = _source(first_identifier_base=3)
    assert allocator.peek(source) == 3
    store.compare_and_set_counter("seq", None, 9)
    assert allocator.peek(source) == 10


@pytest.mark.asyncio
async def test_allocators_on_separate_file_stores_never_duplicate(tmp_path) -> None:
    path = tmp_path / "state.json"
    first = SequenceAllocator(JSONFileStateStore(path))
    second = SequenceAllocator(JSONFileStateStore(path))
    source = _source()
    values = [
        await first.next_value(source),
        await second.next_value(source),
        await first.next_value(source),
    ]
    assert values == [1, 2, 3]
