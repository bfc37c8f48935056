# SPDX-License-Identifier: MIT
"""Buffered delegation to an external identifier provider.

The client keeps a per-source prefetch buffer. Popping from a non-empty
buffer never touches the network; dropping below the source's low-water mark
schedules a background refill, and an empty buffer forces a synchronous
fetch bounded by ``timeout``. Every fetched batch is also appended to a
durable backlog so a restart can rebuild the buffer without re-requesting
identifiers the provider already handed out.

Transient failures (transport errors, timeouts and HTTP 5xx) are retried by
:func:`~idgen.engine.retry.with_retry`; a per-source
:class:`~idgen.engine.retry.CircuitBreaker` stops the client hammering a
degraded provider.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Callable

import httpx
import logfire

from idgen.engine.retry import CircuitBreaker, Deadline, RetryPolicy, acquire, with_retry
from idgen.errors import Cancelled, RemoteUnavailable
from idgen.io_utils.store import StateStore
from idgen.models import RemoteSource

REMOTE_FETCHES = logfire.metric_counter("remote_fetches")


class _ServerError(Exception):
    """HTTP 5xx from the provider; worth another attempt."""


def _parse_identifiers(payload: Any) -> list[str]:
    if not isinstance(payload, dict) or not isinstance(payload.get("identifiers"), list):
        raise RemoteUnavailable("Remote provider returned an unexpected payload")
    values = [str(item).strip() for item in payload["identifiers"]]
    return [value for value in values if value]


class RemoteSourceClient:
    """Fetch and buffer identifiers from remote providers.

    Args:
        store: Durable backlog of fetched but unissued identifiers.
        client: Shared HTTP client. One is created and owned when omitted.
        timeout: Seconds allowed for a single HTTP request.
        retry: Attempt budget for transient failures.
        failure_threshold: Consecutive failures that open a source's circuit.
        cooldown: Seconds an open circuit waits before probing.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        retry: RetryPolicy | None = None,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.retry = retry or RetryPolicy(attempts=3, base=0.1, cap=2.0)
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._owns_client = client is None
        self._client = client
        self._buffers: dict[str, deque[str]] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._fetch_locks: dict[str, asyncio.Lock] = {}
        self._refills: dict[str, asyncio.Task[None]] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client, created on first request when none was injected."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def breaker(self, source_id: str) -> CircuitBreaker:
        """Return the circuit breaker guarding ``source_id``."""
        breaker = self._breakers.get(source_id)
        if breaker is None:
            breaker = self._breakers[source_id] = CircuitBreaker(
                self.failure_threshold,
                self.cooldown,
                name=f"remote:{source_id}",
                clock=self._clock,
            )
        return breaker

    def buffered(self, source_id: str) -> int:
        """Return how many identifiers are buffered for ``source_id``."""
        return len(self._buffers.get(source_id, ()))

    def _buffer(self, source_id: str) -> deque[str]:
        return self._buffers.setdefault(source_id, deque())

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        lock = self._fetch_locks.get(source_id)
        if lock is None:
            lock = self._fetch_locks[source_id] = asyncio.Lock()
        return lock

    async def fetch_batch(
        self, source: RemoteSource, deadline: Deadline | None = None
    ) -> list[str]:
        """Request ``batch_size`` identifiers and append them to the buffer.

        Raises:
            RemoteUnavailable: When the circuit is open, the provider rejects
                the request or the retry budget is spent.
            Cancelled: If ``deadline`` elapses first.
        """
        lock = self._lock_for(source.id)
        await acquire(lock, deadline, "remote fetch")
        try:
            return await self._fetch_locked(source, deadline)
        finally:
            lock.release()

    async def _fetch_locked(
        self, source: RemoteSource, deadline: Deadline | None
    ) -> list[str]:
        breaker = self.breaker(source.id)

        def exhausted(exc: BaseException, attempts: int) -> Exception:
            logfire.error(
                "Remote identifier fetch failed",
                source_id=source.id,
                attempts=attempts,
                error=str(exc),
            )
            return RemoteUnavailable(
                f"Remote source {source.name!r} unavailable after {attempts} attempts"
            )

        with logfire.span(
            "remote.fetch_batch",
            attributes={"source_id": source.id, "batch_size": source.batch_size},
        ):
            values, attempt = await with_retry(
                lambda: self._request(source, breaker),
                policy=self.retry,
                transient=(httpx.TransportError, _ServerError),
                deadline=deadline,
                circuit_breaker=breaker,
                on_exhausted=exhausted,
                operation="remote fetch",
            )
            self.store.append_remote_backlog(source.id, values)
            self._buffer(source.id).extend(values)
            REMOTE_FETCHES.add(1)
            logfire.info(
                "Fetched remote identifiers",
                source_id=source.id,
                received=len(values),
                attempts=attempt + 1,
            )
            return values

    async def _request(self, source: RemoteSource, breaker: CircuitBreaker) -> list[str]:
        auth = None
        if source.username:
            auth = httpx.BasicAuth(source.username, source.password.get_secret_value())
        response = await self.client.post(
            source.url,
            json={"numberToGenerate": source.batch_size},
            auth=auth,
            timeout=self.timeout,
        )
        if response.status_code >= 500:
            raise _ServerError(f"HTTP {response.status_code} from {source.url}")
        if not response.is_success:
            breaker.record_failure()
            raise RemoteUnavailable(
                f"Remote source {source.name!r} rejected the request"
                f" (HTTP {response.status_code})"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            breaker.record_failure()
            raise RemoteUnavailable("Remote provider returned invalid JSON") from exc
        try:
            return _parse_identifiers(payload)
        except RemoteUnavailable:
            breaker.record_failure()
            raise

    async def next_value(
        self, source: RemoteSource, deadline: Deadline | None = None
    ) -> str:
        """Pop the next identifier, fetching synchronously when empty.

        Raises:
            RemoteUnavailable: When the provider fails, or when the client's
                own fetch budget runs out because no ``deadline`` was given.
            Cancelled: If the caller's ``deadline`` elapses or is cancelled.
        """
        buffer = self._buffer(source.id)
        if not buffer:
            if deadline is None:
                await self._fetch_within_budget(source)
            else:
                await self._fetch_if_empty(source, deadline)
            if not buffer:
                raise RemoteUnavailable(
                    f"Remote source {source.name!r} returned no identifiers"
                )
        value = buffer.popleft()
        self.store.remove_remote_backlog(source.id, value)
        if len(buffer) < source.low_water_mark:
            self._schedule_refill(source)
        return value

    async def _fetch_if_empty(self, source: RemoteSource, deadline: Deadline) -> None:
        lock = self._lock_for(source.id)
        await acquire(lock, deadline, "remote fetch")
        try:
            if not self._buffer(source.id):
                await self._fetch_locked(source, deadline)
        finally:
            lock.release()

    async def _fetch_within_budget(self, source: RemoteSource) -> None:
        try:
            await self._fetch_if_empty(source, self._budget())
        except Cancelled as exc:
            logfire.error(
                "Remote identifier fetch timed out", source_id=source.id, error=str(exc)
            )
            raise RemoteUnavailable(f"Remote source {source.name!r} timed out") from exc

    def _budget(self) -> Deadline:
        """Deadline covering every attempt and the backoff between them."""
        policy = self.retry
        backoff = sum(
            min(policy.cap, policy.base * (2**attempt)) * (1 + policy.jitter)
            for attempt in range(policy.attempts - 1)
        )
        return Deadline(self.timeout * policy.attempts + backoff)

    def _schedule_refill(self, source: RemoteSource) -> None:
        task = self._refills.get(source.id)
        if task is not None and not task.done():
            return
        self._refills[source.id] = asyncio.create_task(
            self._refill(source), name=f"idgen-refill-{source.id}"
        )

    async def _refill(self, source: RemoteSource) -> None:
        lock = self._lock_for(source.id)
        async with lock:
            if len(self._buffer(source.id)) >= source.low_water_mark:
                return
            try:
                await self._fetch_locked(source, self._budget())
            except (RemoteUnavailable, Cancelled) as exc:
                logfire.warning(
                    "Background refill failed", source_id=source.id, error=str(exc)
                )

    async def wait_for_refills(self) -> None:
        """Wait until all scheduled refills have finished."""
        pending = [task for task in self._refills.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def restore(self, source: RemoteSource) -> int:
        """Rebuild the buffer from the durable backlog.

        Backlog values already present in the generation log are dropped,
        so a crash between issuing and trimming the backlog cannot hand the
        same identifier out twice.
        """
        issued = {
            record.value
            for record in self.store.list_issued(source.identifier_type_id)
            if record.source_id == source.id
        }
        restored: deque[str] = deque()
        for value in self.store.get_remote_backlog(source.id):
            if value in issued:
                self.store.remove_remote_backlog(source.id, value)
            else:
                restored.append(value)
        self._buffers[source.id] = restored
        logfire.info(
            "Restored remote buffer", source_id=source.id, buffered=len(restored)
        )
        return len(restored)

    async def aclose(self) -> None:
        """Cancel pending refills and close an owned HTTP client."""
        tasks = [task for task in self._refills.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refills.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["RemoteSourceClient"]
