# SPDX-License-Identifier: MIT
"""Runtime environment singleton wiring settings, state and services."""

from __future__ import annotations

import asyncio
from threading import Lock
from typing import TYPE_CHECKING

import httpx
import logfire

from idgen.engine.configuration import ConfigurationService
from idgen.engine.pool import PoolManager
from idgen.engine.remote import RemoteSourceClient
from idgen.engine.retry import RetryPolicy
from idgen.engine.sequence import SequenceAllocator
from idgen.engine.service import GenerationService
from idgen.io_utils.loader import apply_catalogue, load_catalogue
from idgen.io_utils.store import InMemoryStateStore, JSONFileStateStore, StateStore
from idgen.models import RemoteSource
from idgen.utils import ErrorHandler, LoggingErrorHandler

if TYPE_CHECKING:  # pragma: no cover - for type checkers only
    from idgen.runtime.settings import Settings


class RuntimeEnv:
    """Thread-safe singleton storing settings and the shared engine services.

    The store is created from ``settings.state_file`` unless one is injected,
    and every service shares it, so there is exactly one source of truth per
    process.
    """

    _instance: "RuntimeEnv" | None = None
    _lock = Lock()

    def __init__(
        self,
        settings: "Settings",
        *,
        store: StateStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        error_handler: ErrorHandler | None = None,
    ) -> None:
        """Initialise the runtime environment."""
        self.settings = settings
        self.error_handler = error_handler or LoggingErrorHandler()
        if store is None:
            store = (
                JSONFileStateStore(settings.state_file)
                if settings.state_file
                else InMemoryStateStore()
            )
        self.store = store
        self.config = ConfigurationService(store)
        self.sequences = SequenceAllocator(
            store,
            retry=RetryPolicy(
                attempts=settings.allocation_attempts,
                base=settings.retry_base_delay,
                cap=settings.retry_max_delay,
            ),
            batch_size=settings.sequence_batch_size,
        )
        self.pools = PoolManager(store, reservation_ttl=settings.reservation_ttl)
        self.remote = RemoteSourceClient(
            store,
            client=http_client,
            timeout=settings.remote_timeout,
            retry=RetryPolicy(
                attempts=settings.remote_attempts,
                base=settings.retry_base_delay,
                cap=settings.retry_max_delay,
            ),
            failure_threshold=settings.circuit_failure_threshold,
            cooldown=settings.circuit_cooldown,
        )
        self.generation = GenerationService(
            store,
            sequences=self.sequences,
            pools=self.pools,
            remote=self.remote,
            error_handler=self.error_handler,
        )
        if settings.catalogue_file:
            apply_catalogue(self.config, load_catalogue(settings.catalogue_file))
        restored = sum(
            self.remote.restore(source)
            for source in store.list_sources()
            if isinstance(source, RemoteSource) and not source.retired
        )
        logfire.debug(
            "RuntimeEnv created",
            settings=repr(settings),
            state_file=str(settings.state_file) if settings.state_file else None,
            remote_buffered=restored,
        )

    def start_sweeper(self) -> asyncio.Task[None]:
        """Release expired pool reservations every ``sweep_interval`` seconds."""
        return self.pools.start_sweeper(self.settings.sweep_interval)

    async def aclose(self) -> None:
        """Stop background work and release network resources."""
        await self.pools.stop_sweeper()
        await self.remote.aclose()

    @classmethod
    def initialize(cls, settings: "Settings", **kwargs: object) -> "RuntimeEnv":
        """Initialise and return the runtime environment.

        Args:
            settings: Validated application settings.
            **kwargs: Collaborators forwarded to :class:`RuntimeEnv`.

        Returns:
            The active :class:`RuntimeEnv` instance.
        """
        with logfire.span("runtime_env.initialize"):
            with cls._lock:
                logfire.info(
                    "Initialising runtime environment",
                    state_file=str(settings.state_file) if settings.state_file else None,
                )
                cls._instance = cls(settings, **kwargs)  # type: ignore[arg-type]
                return cls._instance

    @classmethod
    def instance(cls) -> "RuntimeEnv":
        """Return the current runtime environment.

        Raises:
            RuntimeError: If :meth:`initialize` was not called.
        """
        inst = cls._instance
        if inst is None:
            logfire.error("RuntimeEnv accessed before initialisation")
            raise RuntimeError("RuntimeEnv has not been initialised")
        return inst

    @classmethod
    def reset(cls) -> None:
        """Forget the active runtime environment.

        Callers owning background work should ``await env.aclose()`` first.
        """
        with logfire.span("runtime_env.reset"):
            with cls._lock:
                logfire.info("Resetting runtime environment")
                cls._instance = None


__all__ = ["RuntimeEnv"]
