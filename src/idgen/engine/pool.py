# SPDX-License-Identifier: MIT
"""Reservation lifecycle over finite pre-loaded identifier pools.

Every pooled identifier is in exactly one of ``available``, ``reserved`` or
``used``. ``reserve`` moves the first available entry to ``reserved`` with a
token and an expiry; ``commit`` makes it ``used`` for good and ``release``
returns it. Reservations that outlive their expiry are returned by a sweep
so abandoned registration attempts cannot leak identifiers.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable
from uuid import uuid4

import logfire

from idgen.engine.retry import Deadline, acquire
from idgen.errors import PoolExhausted, ReservationNotFound
from idgen.io_utils.store import StateStore
from idgen.models import PoolEntry, PoolSource, PoolStats

RESERVATIONS_TOTAL = logfire.metric_counter("pool_reservations")
EXPIRED_TOTAL = logfire.metric_counter("pool_reservations_expired")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PoolManager:
    """Reserve, commit and release identifiers held by pool sources.

    Args:
        store: Durable pool state.
        reservation_ttl: Default seconds before a reservation expires.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        reservation_ttl: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.reservation_ttl = reservation_ttl
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._sweeper: asyncio.Task[None] | None = None

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = self._locks[source_id] = asyncio.Lock()
        return lock

    async def reserve(
        self,
        source: PoolSource,
        deadline: Deadline | None = None,
        location_id: str | None = None,
    ) -> tuple[str, str]:
        """Reserve the first available identifier of ``source``.

        ``location_id`` is kept on the reservation so the commit can log it.

        Returns:
            Tuple of the identifier and the reservation token.

        Raises:
            PoolExhausted: Immediately, when nothing is available.
        """
        ttl = source.reservation_ttl or self.reservation_ttl
        lock = self._lock_for(source.id)
        with logfire.span("pool.reserve", attributes={"source_id": source.id}):
            await acquire(lock, deadline, "pool reservation")
            try:
                for entry in self.store.list_pool_entries(source.id):
                    if entry.state != "available":
                        continue
                    now = self._clock()
                    token = uuid4().hex
                    reserved = PoolEntry(
                        value=entry.value,
                        state="reserved",
                        token=token,
                        reserved_at=now,
                        expires_at=now + timedelta(seconds=ttl),
                        location_id=location_id,
                    )
                    if self.store.transition_pool_entry(
                        source.id, entry.value, "available", reserved
                    ):
                        RESERVATIONS_TOTAL.add(1)
                        logfire.debug(
                            "Reserved pooled identifier",
                            source_id=source.id,
                            value=entry.value,
                        )
                        return entry.value, token
            finally:
                lock.release()
        logfire.warning("Identifier pool exhausted", source_id=source.id)
        raise PoolExhausted(f"Pool source {source.name!r} has no available identifiers")

    async def commit(self, token: str) -> str:
        """Mark the reservation's identifier permanently used.

        Returns:
            The committed identifier.

        Raises:
            ReservationNotFound: If the token is unknown, settled or expired.
        """
        source_id, entry = self._find(token)
        async with self._lock_for(source_id):
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                self._return_to_pool(source_id, entry)
                raise ReservationNotFound(f"Reservation {token} has expired")
            used = PoolEntry(
                value=entry.value,
                state="used",
                reserved_at=entry.reserved_at,
                location_id=entry.location_id,
            )
            if not self.store.transition_pool_entry(
                source_id, entry.value, "reserved", used, expected_token=token
            ):
                raise ReservationNotFound(f"Reservation {token} is no longer held")
        logfire.info("Committed pooled identifier", source_id=source_id, value=entry.value)
        return entry.value

    async def release(self, token: str) -> str:
        """Return the reservation's identifier to the available set."""
        source_id, entry = self._find(token)
        async with self._lock_for(source_id):
            if not self._return_to_pool(source_id, entry):
                raise ReservationNotFound(f"Reservation {token} is no longer held")
        logfire.debug("Released pooled identifier", source_id=source_id, value=entry.value)
        return entry.value

    def lookup(self, token: str) -> tuple[str, PoolEntry]:
        """Return ``(source_id, entry)`` of a live reservation."""
        return self._find(token)

    def _find(self, token: str) -> tuple[str, PoolEntry]:
        found = self.store.find_reservation(token)
        if found is None:
            raise ReservationNotFound(f"Unknown reservation {token}")
        return found

    def _return_to_pool(self, source_id: str, entry: PoolEntry) -> bool:
        return self.store.transition_pool_entry(
            source_id,
            entry.value,
            "reserved",
            PoolEntry(value=entry.value),
            expected_token=entry.token,
        )

    def sweep(self, source_id: str | None = None) -> int:
        """Release every expired reservation; return how many were released."""
        now = self._clock()
        released = 0
        sources = [source_id] if source_id else [s.id for s in self.store.list_sources()]
        with logfire.span("pool.sweep"):
            for sid in sources:
                for entry in self.store.list_pool_entries(sid):
                    if (
                        entry.state == "reserved"
                        and entry.expires_at is not None
                        and entry.expires_at <= now
                        and self._return_to_pool(sid, entry)
                    ):
                        released += 1
            if released:
                EXPIRED_TOTAL.add(released)
                logfire.info("Released expired reservations", count=released)
        return released

    def add_identifiers(self, source: PoolSource, values: Iterable[str]) -> int:
        """Load more identifiers into ``source``; duplicates are skipped."""
        cleaned = [value.strip() for value in values if value and value.strip()]
        added = self.store.add_pool_entries(source.id, cleaned)
        logfire.info(
            "Uploaded identifiers to pool",
            source_id=source.id,
            offered=len(cleaned),
            added=added,
        )
        return added

    def stats(self, source: PoolSource) -> PoolStats:
        """Return per-state counts for ``source``."""
        stats = PoolStats()
        for entry in self.store.list_pool_entries(source.id):
            setattr(stats, entry.state, getattr(stats, entry.state) + 1)
        return stats

    def start_sweeper(self, interval: float) -> asyncio.Task[None]:
        """Run :meth:`sweep` every ``interval`` seconds in the background."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                self.sweep()

        self._sweeper = asyncio.create_task(_loop(), name="idgen-pool-sweeper")
        return self._sweeper

    async def stop_sweeper(self) -> None:
        """Cancel the background sweep task, if running."""
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["PoolManager"]
