# SPDX-License-Identifier: MIT
"""Concurrency-safe monotonic counters for sequential identifier sources.

Each source owns an :class:`asyncio.Lock` so callers within one process are
serialised per source while unrelated sources never contend. Durable state is
advanced with the store's compare-and-swap before a number is handed out, so
a crash after the write can only leave a gap, never a duplicate. Conflicting
writers from other processes surface as :class:`ContentionError` and are
retried with bounded exponential backoff.
"""

from __future__ import annotations

import asyncio
from collections import deque

import logfire

from idgen.core.encoder import capacity
from idgen.engine.retry import Deadline, RetryPolicy, acquire, with_retry
from idgen.errors import AllocationTimeout, CapacityExhausted, ContentionError
from idgen.io_utils.store import StateStore
from idgen.models import SequentialSource

ALLOCATIONS_TOTAL = logfire.metric_counter("sequence_allocations")
CONTENTION_TOTAL = logfire.metric_counter("sequence_contention")


class SequenceAllocator:
    """Hand out unique, monotonically increasing sequence numbers.

    Args:
        store: Durable state holding the last issued counter per source.
        retry: Attempt budget for compare-and-swap conflicts.
        batch_size: Numbers reserved per durable write. Values above one
            amortise the write cost; numbers left in a block when the process
            stops are skipped, never reissued.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        retry: RetryPolicy | None = None,
        batch_size: int = 1,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.retry = retry or RetryPolicy(attempts=8)
        self.batch_size = batch_size
        self._locks: dict[str, asyncio.Lock] = {}
        self._blocks: dict[str, deque[int]] = {}

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = self._locks[source_id] = asyncio.Lock()
        return lock

    def peek(self, source: SequentialSource) -> int:
        """Return the number the next durable advance would start at."""
        current = self.store.get_counter(source.id)
        return source.first_identifier_base if current is None else current + 1

    async def next_value(
        self, source: SequentialSource, deadline: Deadline | None = None
    ) -> int:
        """Return the next sequence number for ``source``.

        Raises:
            CapacityExhausted: If the number would not fit ``max_length``.
            AllocationTimeout: If contention outlasts the retry budget.
            Cancelled: If ``deadline`` elapses first.
        """
        lock = self._lock_for(source.id)
        with logfire.span("sequence.next_value", attributes={"source_id": source.id}):
            await acquire(lock, deadline, "sequence allocation")
            try:
                block = self._blocks.get(source.id)
                if not block:
                    start, stop = await self._advance(source, self.batch_size, deadline)
                    block = self._blocks[source.id] = deque(range(start, stop))
                value = block.popleft()
            finally:
                lock.release()
            ALLOCATIONS_TOTAL.add(1)
            logfire.debug("Allocated sequence number", source_id=source.id, value=value)
            return value

    async def reserve_block(
        self,
        source: SequentialSource,
        size: int,
        deadline: Deadline | None = None,
    ) -> range:
        """Durably reserve ``size`` contiguous numbers for the caller.

        The returned numbers belong to the caller alone; any it does not use
        are permanently skipped.
        """
        if size < 1:
            raise ValueError("size must be >= 1")
        lock = self._lock_for(source.id)
        with logfire.span(
            "sequence.reserve_block", attributes={"source_id": source.id, "size": size}
        ):
            await acquire(lock, deadline, "sequence block reservation")
            try:
                # Drop any cached block so later numbers stay above this one.
                self._blocks.pop(source.id, None)
                start, stop = await self._advance(source, size, deadline)
            finally:
                lock.release()
            ALLOCATIONS_TOTAL.add(size)
            return range(start, stop)

    def discard_cached(self, source_id: str | None = None) -> None:
        """Forget cached blocks, leaving their unused numbers as gaps."""
        if source_id is None:
            self._blocks.clear()
        else:
            self._blocks.pop(source_id, None)

    async def _advance(
        self, source: SequentialSource, size: int, deadline: Deadline | None
    ) -> tuple[int, int]:
        limit = capacity(
            source.base_character_set, source.max_length, source.prefix, source.suffix
        )

        async def attempt() -> tuple[int, int]:
            current = self.store.get_counter(source.id)
            start = source.first_identifier_base if current is None else current + 1
            if start > limit:
                raise CapacityExhausted(
                    f"Sequential source {source.name!r} has issued every number"
                    f" that fits in {source.max_length} characters"
                )
            stop = min(start + size, limit + 1)
            if not self.store.compare_and_set_counter(source.id, current, stop - 1):
                CONTENTION_TOTAL.add(1)
                raise ContentionError(
                    f"Counter for {source.id} moved while allocating from {current}"
                )
            return start, stop

        def exhausted(exc: BaseException, attempts: int) -> Exception:
            logfire.error(
                "Sequence allocation timed out",
                source_id=source.id,
                attempts=attempts,
            )
            return AllocationTimeout(
                f"Could not advance counter for source {source.name!r}"
                f" after {attempts} attempts"
            )

        (start, stop), _ = await with_retry(
            attempt,
            policy=self.retry,
            transient=(ContentionError,),
            deadline=deadline,
            on_exhausted=exhausted,
            operation="sequence allocation",
        )
        return start, stop


__all__ = ["SequenceAllocator"]
