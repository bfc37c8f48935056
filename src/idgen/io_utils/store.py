# SPDX-License-Identifier: MIT
"""Durable state for configuration records, counters, pools and logs.

The store is the engine's only source of truth. Components never cache
durable facts beyond an advisory buffer; every mutation that must survive a
crash goes through one of the conditional operations below, which succeed
only when the stored value still matches what the caller last read.

Two implementations are provided. :class:`InMemoryStateStore` keeps state in
dictionaries guarded by a lock. :class:`JSONFileStateStore` extends it with a
JSON document shared by every process that opens the same path.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import ContextManager, Iterable, Iterator

import logfire
from filelock import FileLock
from pydantic import Field

from idgen.models import (
    REVEAL_SECRETS,
    AutoGenerationPolicy,
    IdentifierSource,
    IdentifierType,
    IssuedIdentifier,
    PoolEntry,
    PoolEntryState,
    StrictModel,
)


class StateStore(ABC):
    """Storage contract required by the allocation engine.

    Implementations must make every method atomic with respect to the others.
    """

    # -- configuration records -------------------------------------------------

    @abstractmethod
    def save_identifier_type(self, identifier_type: IdentifierType) -> None:
        """Insert or replace an identifier type."""

    @abstractmethod
    def get_identifier_type(self, type_id: str) -> IdentifierType | None:
        """Return the identifier type with ``type_id``."""

    @abstractmethod
    def list_identifier_types(self) -> list[IdentifierType]:
        """Return all identifier types."""

    @abstractmethod
    def save_source(self, source: IdentifierSource) -> None:
        """Insert or replace an identifier source."""

    @abstractmethod
    def get_source(self, source_id: str) -> IdentifierSource | None:
        """Return the identifier source with ``source_id``."""

    @abstractmethod
    def list_sources(self) -> list[IdentifierSource]:
        """Return all identifier sources."""

    @abstractmethod
    def save_policy(self, policy: AutoGenerationPolicy) -> None:
        """Insert or replace an auto-generation policy."""

    @abstractmethod
    def delete_policy(self, policy_id: str) -> bool:
        """Remove a policy, returning ``False`` when it did not exist."""

    @abstractmethod
    def list_policies(self) -> list[AutoGenerationPolicy]:
        """Return all auto-generation policies."""

    # -- sequential counters ---------------------------------------------------

    @abstractmethod
    def get_counter(self, source_id: str) -> int | None:
        """Return the last issued counter value, ``None`` before the first."""

    @abstractmethod
    def compare_and_set_counter(
        self, source_id: str, expected: int | None, new: int
    ) -> bool:
        """Store ``new`` only if the counter still equals ``expected``."""

    # -- pools -----------------------------------------------------------------

    @abstractmethod
    def add_pool_entries(self, source_id: str, values: Iterable[str]) -> int:
        """Append unseen ``values`` as available entries; return how many."""

    @abstractmethod
    def list_pool_entries(self, source_id: str) -> list[PoolEntry]:
        """Return pool entries in load order."""

    @abstractmethod
    def transition_pool_entry(
        self,
        source_id: str,
        value: str,
        expected: PoolEntryState,
        entry: PoolEntry,
        expected_token: str | None = None,
    ) -> bool:
        """Replace an entry only if it is still in ``expected`` state.

        When ``expected_token`` is given the stored token must match too.
        """

    @abstractmethod
    def find_reservation(self, token: str) -> tuple[str, PoolEntry] | None:
        """Return ``(source_id, entry)`` for a reserved ``token``."""

    # -- generation log --------------------------------------------------------

    @abstractmethod
    def record_issued(self, record: IssuedIdentifier) -> None:
        """Append ``record`` to the generation log."""

    @abstractmethod
    def list_issued(self, identifier_type_id: str | None = None) -> list[IssuedIdentifier]:
        """Return generation log records, optionally for one type."""

    # -- remote backlog --------------------------------------------------------

    @abstractmethod
    def append_remote_backlog(self, source_id: str, values: Iterable[str]) -> None:
        """Durably remember identifiers fetched but not yet issued."""

    @abstractmethod
    def remove_remote_backlog(self, source_id: str, value: str) -> bool:
        """Forget ``value``; return ``False`` when it was not present."""

    @abstractmethod
    def get_remote_backlog(self, source_id: str) -> list[str]:
        """Return identifiers fetched but not yet issued."""


class StoreSnapshot(StrictModel):
    """Serialisable image of the whole store."""

    identifier_types: dict[str, IdentifierType] = Field(default_factory=dict)
    sources: dict[str, IdentifierSource] = Field(default_factory=dict)
    policies: dict[str, AutoGenerationPolicy] = Field(default_factory=dict)
    counters: dict[str, int] = Field(default_factory=dict)
    pools: dict[str, dict[str, PoolEntry]] = Field(default_factory=dict)
    issued: list[IssuedIdentifier] = Field(default_factory=list)
    remote_backlog: dict[str, list[str]] = Field(default_factory=dict)


class InMemoryStateStore(StateStore):
    """Thread-safe dictionary-backed store.

    Every public method holds a re-entrant lock for its full duration, which
    makes the conditional operations true compare-and-swap primitives within
    one process.
    """

    def __init__(self, snapshot: StoreSnapshot | None = None) -> None:
        self._state = snapshot or StoreSnapshot()
        self._lock = RLock()

    def _guard(self) -> ContextManager[object]:
        """Return the context held for the full duration of every method."""
        return self._lock

    def _changed(self) -> None:
        """Hook called after every successful mutation."""

    def snapshot(self) -> StoreSnapshot:
        """Return a deep copy of the current state."""
        with self._guard():
            return self._state.model_copy(deep=True)

    # -- configuration records -------------------------------------------------

    def save_identifier_type(self, identifier_type: IdentifierType) -> None:
        with self._guard():
            self._state.identifier_types[identifier_type.id] = identifier_type
            self._changed()

    def get_identifier_type(self, type_id: str) -> IdentifierType | None:
        with self._guard():
            return self._state.identifier_types.get(type_id)

    def list_identifier_types(self) -> list[IdentifierType]:
        with self._guard():
            return list(self._state.identifier_types.values())

    def save_source(self, source: IdentifierSource) -> None:
        with self._guard():
            self._state.sources[source.id] = source
            self._changed()

    def get_source(self, source_id: str) -> IdentifierSource | None:
        with self._guard():
            return self._state.sources.get(source_id)

    def list_sources(self) -> list[IdentifierSource]:
        with self._guard():
            return list(self._state.sources.values())

    def save_policy(self, policy: AutoGenerationPolicy) -> None:
        with self._guard():
            self._state.policies[policy.id] = policy
            self._changed()

    def delete_policy(self, policy_id: str) -> bool:
        with self._guard():
            if self._state.policies.pop(policy_id, None) is None:
                return False
            self._changed()
            return True

    def list_policies(self) -> list[AutoGenerationPolicy]:
        with self._guard():
            return list(self._state.policies.values())

    # -- sequential counters ---------------------------------------------------

    def get_counter(self, source_id: str) -> int | None:
        with self._guard():
            return self._state.counters.get(source_id)

    def compare_and_set_counter(
        self, source_id: str, expected: int | None, new: int
    ) -> bool:
        with self._guard():
            if self._state.counters.get(source_id) != expected:
                return False
            self._state.counters[source_id] = new
            self._changed()
            return True

    # -- pools -----------------------------------------------------------------

    def add_pool_entries(self, source_id: str, values: Iterable[str]) -> int:
        with self._guard():
            pool = self._state.pools.setdefault(source_id, {})
            added = 0
            for value in values:
                if value in pool:
                    continue
                pool[value] = PoolEntry(value=value)
                added += 1
            if added:
                self._changed()
            return added

    def list_pool_entries(self, source_id: str) -> list[PoolEntry]:
        with self._guard():
            return list(self._state.pools.get(source_id, {}).values())

    def transition_pool_entry(
        self,
        source_id: str,
        value: str,
        expected: PoolEntryState,
        entry: PoolEntry,
        expected_token: str | None = None,
    ) -> bool:
        with self._guard():
            pool = self._state.pools.get(source_id, {})
            current = pool.get(value)
            if current is None or current.state != expected:
                return False
            if expected_token is not None and current.token != expected_token:
                return False
            pool[value] = entry
            self._changed()
            return True

    def find_reservation(self, token: str) -> tuple[str, PoolEntry] | None:
        with self._guard():
            for source_id, pool in self._state.pools.items():
                for entry in pool.values():
                    if entry.state == "reserved" and entry.token == token:
                        return source_id, entry
            return None

    # -- generation log --------------------------------------------------------

    def record_issued(self, record: IssuedIdentifier) -> None:
        with self._guard():
            self._state.issued.append(record)
            self._changed()

    def list_issued(self, identifier_type_id: str | None = None) -> list[IssuedIdentifier]:
        with self._guard():
            return [
                record
                for record in self._state.issued
                if identifier_type_id is None
                or record.identifier_type_id == identifier_type_id
            ]

    # -- remote backlog --------------------------------------------------------

    def append_remote_backlog(self, source_id: str, values: Iterable[str]) -> None:
        with self._guard():
            self._state.remote_backlog.setdefault(source_id, []).extend(values)
            self._changed()

    def remove_remote_backlog(self, source_id: str, value: str) -> bool:
        with self._guard():
            backlog = self._state.remote_backlog.get(source_id, [])
            try:
                backlog.remove(value)
            except ValueError:
                return False
            self._changed()
            return True

    def get_remote_backlog(self, source_id: str) -> list[str]:
        with self._guard():
            return list(self._state.remote_backlog.get(source_id, []))


class JSONFileStateStore(InMemoryStateStore):
    """Store persisting its full state as one JSON document.

    Every method holds an inter-process :class:`filelock.FileLock` on
    ``<path>.lock`` and reloads the document from disk first, so conditional
    operations compare against the state shared by every process using
    ``path``. Every mutation rewrites the document by writing a temporary
    file, flushing and syncing it, then replacing the target with
    :func:`os.replace`. A crash leaves either the old or the new document.
    """

    def __init__(self, path: Path | str, *, lock_timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file_lock = FileLock(f"{self.path}.lock", timeout=lock_timeout)
        self._depth = 0
        with self._file_lock:
            snapshot = self._load(self.path)
        super().__init__(snapshot)

    @staticmethod
    def _load(path: Path) -> StoreSnapshot:
        with logfire.span("store.load", attributes={"path": str(path)}):
            try:
                raw = path.read_bytes()
            except FileNotFoundError:
                logfire.debug("State file not found; starting empty", path=str(path))
                return StoreSnapshot()
            snapshot = StoreSnapshot.model_validate_json(raw)
            logfire.debug(
                "Loaded state",
                path=str(path),
                sources=len(snapshot.sources),
                counters=len(snapshot.counters),
            )
            return snapshot

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with self._file_lock:
                self._state = self._load(self.path)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0

    def _changed(self) -> None:
        payload = self._state.model_dump_json(
            indent=2, context={REVEAL_SECRETS: True}
        )
        tmp_path = Path(f"{self.path}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        logfire.debug("State persisted", path=str(self.path), bytes=len(payload))


__all__ = [
    "InMemoryStateStore",
    "JSONFileStateStore",
    "StateStore",
    "StoreSnapshot",
]
