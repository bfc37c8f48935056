# SPDX-License-Identifier: MIT
"""Retry helpers shared by the sequence allocator and the remote client.

This module centralises exponential backoff, deadline handling and circuit
breaking so call sites share consistent logic. A :class:`Deadline` bounds
every blocking step and converts expiry or an explicit cancel signal into
:class:`~idgen.errors.Cancelled`.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, TypeVar

import logfire

from idgen.errors import Cancelled, ContentionError, RemoteUnavailable

T = TypeVar("T")

CircuitState = Literal["closed", "open", "half_open"]


# -- Deadlines --------------------------------------------------------------------


class Deadline:
    """Time budget and cancellation signal for one engine call.

    Args:
        timeout: Seconds from now before the call must give up; ``None``
            leaves the call unbounded in time.
        cancel_event: Optional event that aborts the call once set.
    """

    def __init__(
        self,
        timeout: float | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout
        self.cancel_event = cancel_event

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        """Return a deadline ``seconds`` from now."""
        return cls(seconds)

    def remaining(self) -> float | None:
        """Return seconds left, ``0.0`` once expired, or ``None`` if unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, operation: str = "operation") -> None:
        """Raise :class:`Cancelled` if the deadline passed or was cancelled."""
        if self.cancelled:
            raise Cancelled(f"{operation} was cancelled")
        if self.expired:
            raise Cancelled(f"{operation} exceeded its deadline")

    async def wait(self, awaitable: Awaitable[T], operation: str = "operation") -> T:
        """Await ``awaitable`` unless the deadline or cancel signal fires first.

        If the awaitable finishes in the same instant the deadline fires, its
        result wins. When the calling task itself is cancelled the inner task
        may already have finished; callers holding a resource from it must
        release it, as :func:`acquire` does for locks.
        """
        self.check(operation)
        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future[object]] = {task}
        cancel_waiter: asyncio.Future[object] | None = None
        if self.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(self.cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            return await task
        except asyncio.CancelledError:
            pass
        reason = "was cancelled" if self.cancelled else "exceeded its deadline"
        raise Cancelled(f"{operation} {reason}")


async def guarded(
    awaitable: Awaitable[T], deadline: Deadline | None, operation: str
) -> T:
    """Await ``awaitable`` under ``deadline`` when one is supplied."""
    if deadline is None:
        return await awaitable
    return await deadline.wait(awaitable, operation)


async def acquire(
    lock: asyncio.Lock, deadline: Deadline | None, operation: str
) -> None:
    """Acquire ``lock`` under ``deadline``.

    A lock won in the same tick the caller is cancelled is released again
    before the cancellation propagates.
    """
    if deadline is None:
        await lock.acquire()
        return
    task = asyncio.ensure_future(lock.acquire())
    try:
        await deadline.wait(task, operation)
    except BaseException:
        if task.done() and not task.cancelled() and task.exception() is None:
            lock.release()
        raise


# -- Circuit breaker --------------------------------------------------------------


class CircuitBreaker:
    """Three-state circuit breaker guarding a degraded dependency.

    ``closed`` lets calls through and counts consecutive failures. Reaching
    ``threshold`` trips to ``open``; calls are refused until ``cooldown``
    seconds pass, after which a single ``half_open`` probe is allowed. A
    successful probe closes the circuit, a failed one re-opens it.
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown: float = 30.0,
        *,
        name: str = "circuit",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.cooldown = cooldown
        self.name = name
        self.failures = 0
        self._state: CircuitState = "closed"
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._clock = clock

    @property
    def state(self) -> CircuitState:
        if self._state == "open" and self._clock() - self._opened_at >= self.cooldown:
            return "half_open"
        return self._state

    def before_call(self) -> None:
        """Admit a call or raise :class:`RemoteUnavailable` while open."""
        state = self.state
        if state == "closed":
            return
        if state == "half_open" and not self._probe_in_flight:
            self._state = "half_open"
            self._probe_in_flight = True
            logfire.info("Circuit half-open; probing", circuit=self.name)
            return
        raise RemoteUnavailable(f"Circuit {self.name} is open; skipping call")

    def record_success(self) -> None:
        """Reset the failure count and close the circuit."""
        if self._state != "closed":
            logfire.info("Circuit closed", circuit=self.name)
        self.failures = 0
        self._state = "closed"
        self._probe_in_flight = False

    def abandon_probe(self) -> None:
        """Allow a new probe after one ended without a verdict."""
        self._probe_in_flight = False

    def record_failure(self) -> None:
        """Count a failure, tripping the circuit at the threshold."""
        self.failures += 1
        if self._state == "half_open" or self.failures >= self.threshold:
            if self._state != "open":
                logfire.warning(
                    "Circuit breaker activated",
                    circuit=self.name,
                    failures=self.failures,
                    cooldown=self.cooldown,
                )
            self._state = "open"
            self._opened_at = self._clock()
            self._probe_in_flight = False


# -- Retry computation ------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff settings."""

    attempts: int = 5
    base: float = 0.01
    cap: float = 0.5
    jitter: float = 0.25

    def delay(self, attempt: int) -> float:
        """Return the backoff delay after the zero-based ``attempt``."""
        delay = min(self.cap, self.base * (2**attempt))
        delay *= 1 + random.random() * self.jitter  # nosec B311 - jitter
        return float(delay)


async def with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    transient: tuple[type[BaseException], ...] = (ContentionError,),
    deadline: Deadline | None = None,
    circuit_breaker: CircuitBreaker | None = None,
    on_exhausted: Callable[[BaseException, int], Exception] | None = None,
    operation: str = "operation",
) -> tuple[T, int]:
    """Run ``call`` with bounded exponential backoff and jitter.

    Args:
        call: Zero-argument coroutine factory performing one attempt.
        policy: Attempt budget and backoff shape.
        transient: Exception types worth another attempt.
        deadline: Optional deadline checked before every attempt and sleep.
        circuit_breaker: Optional breaker consulted before each attempt and
            updated with its outcome.
        on_exhausted: Builds the exception raised once the budget is spent;
            the last transient error is re-raised when omitted.
        operation: Label used in logs and cancellation messages.

    Returns:
        Tuple of the call's result and the zero-based attempt that succeeded.
    """
    for attempt in range(policy.attempts):
        if deadline is not None:
            deadline.check(operation)
        if circuit_breaker is not None:
            circuit_breaker.before_call()
        try:
            result = await guarded(call(), deadline, operation)
        except transient as exc:
            if circuit_breaker is not None:
                circuit_breaker.record_failure()
            if attempt + 1 >= policy.attempts:
                if on_exhausted is not None:
                    raise on_exhausted(exc, attempt + 1) from exc
                raise
            delay = policy.delay(attempt)
            logfire.warning(
                "Retrying operation",
                operation=operation,
                attempt=attempt + 1,
                backoff_delay=delay,
                error=str(exc),
            )
            await guarded(asyncio.sleep(delay), deadline, operation)
            continue
        except BaseException:
            if circuit_breaker is not None:
                circuit_breaker.abandon_probe()
            raise
        if circuit_breaker is not None:
            circuit_breaker.record_success()
        return result, attempt
    raise RuntimeError("Unreachable retry state")


__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "Deadline",
    "RetryPolicy",
    "acquire",
    "guarded",
    "with_retry",
]
