# SPDX-License-Identifier: MIT
"""Generation façade used by patient registration.

:class:`GenerationService` resolves the auto-generation policy for an
identifier type and location, dispatches to the source strategy, appends a
check digit, validates the result and records it. Each attempt walks the
state machine::

    start -> policy_selected -> source_dispatched -> allocated
          -> validated -> committed
    allocated -> validation_failed
    source_dispatched -> source_unavailable

and is traced in a single logfire span.
"""

from __future__ import annotations

import time
from typing import Callable

import logfire

from idgen.core.check_digit import get_algorithm
from idgen.core.encoder import encode
from idgen.core.validator import IdentifierValidator
from idgen.engine.policy import PolicyResolver
from idgen.engine.pool import PoolManager
from idgen.engine.remote import RemoteSourceClient
from idgen.engine.retry import Deadline
from idgen.engine.sequence import SequenceAllocator
from idgen.errors import (
    AllocationTimeout,
    Cancelled,
    CapacityExhausted,
    ConfigurationError,
    FieldError,
    GeneratedValueInvalid,
    IdentifierEngineError,
    InvalidIdentifier,
    LocationRequired,
    ManualEntryRequired,
    NotFound,
    RemoteUnavailable,
)
from idgen.io_utils.store import StateStore
from idgen.models import (
    AttemptState,
    GeneratedIdentifier,
    IdentifierType,
    IssuedIdentifier,
    PoolSource,
    RemoteSource,
    SequentialSource,
)
from idgen.observability import telemetry
from idgen.utils.error_handler import ErrorHandler, LoggingErrorHandler

IDENTIFIERS_GENERATED = logfire.metric_counter("identifiers_generated")
GENERATION_FAILURES = logfire.metric_counter("generation_failures")

_UNAVAILABLE = (RemoteUnavailable, CapacityExhausted, AllocationTimeout, Cancelled)


class GenerationService:
    """Issue validated identifiers for registration flows.

    Collaborators default to fresh instances over ``store`` and may be
    injected to share state with other services or to ease testing.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        resolver: PolicyResolver | None = None,
        sequences: SequenceAllocator | None = None,
        pools: PoolManager | None = None,
        remote: RemoteSourceClient | None = None,
        validator: IdentifierValidator | None = None,
        error_handler: ErrorHandler | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.store = store
        self.resolver = resolver or PolicyResolver(store)
        self.sequences = sequences or SequenceAllocator(store)
        self.pools = pools or PoolManager(store)
        self.remote = remote or RemoteSourceClient(store)
        self.validator = validator or IdentifierValidator()
        self.error_handler = error_handler or LoggingErrorHandler()
        self._timer = timer

    async def generate(
        self,
        identifier_type_id: str,
        location_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> GeneratedIdentifier:
        """Generate an identifier of ``identifier_type_id`` for ``location_id``.

        Sequential and remote values are committed and logged before being
        returned. Pool values come back ``reserved`` with a token that must be
        passed to :meth:`commit_reservation` or :meth:`release_reservation`.

        Raises:
            ConfigurationError: For unknown or retired records, or when no
                policy applies (:class:`NoPolicyConfigured`).
            ManualEntryRequired: If the policy disables automatic generation.
            LocationRequired: If the type needs a location and none was given.
            CapacityExhausted: If the source has no identifiers left.
            AllocationTimeout: If counter contention outlasts the retry budget.
            RemoteUnavailable: If the remote provider cannot supply a value.
            GeneratedValueInvalid: If the value fails its type's format.
            Cancelled: If ``deadline`` elapses or is cancelled.
        """
        started = self._timer()
        state: AttemptState = "start"
        source_id = "unresolved"
        attrs = {"identifier_type_id": identifier_type_id, "location_id": location_id}
        with logfire.span("generation.attempt", attributes=attrs) as span:
            try:
                effective = self.resolver.resolve(identifier_type_id, location_id)
                state = "policy_selected"
                identifier_type, source = effective.identifier_type, effective.source
                source_id = source.id
                span.set_attribute("source_id", source_id)
                if not effective.automatic_generation:
                    raise ManualEntryRequired(
                        f"Automatic generation of {identifier_type.name!r} is disabled"
                        + (f" at location {location_id}" if location_id else "")
                    )
                if identifier_type.location_behavior == "REQUIRED" and location_id is None:
                    raise LocationRequired(
                        f"Identifier type {identifier_type.name!r} requires a location"
                    )

                state = "source_dispatched"
                sequence_number: int | None = None
                token: str | None = None
                if isinstance(source, SequentialSource):
                    sequence_number = await self.sequences.next_value(source, deadline)
                    value = encode(
                        sequence_number,
                        source.base_character_set,
                        source.min_length,
                        source.max_length,
                        source.prefix,
                        source.suffix,
                    )
                    value += self._check_character(identifier_type, value)
                elif isinstance(source, PoolSource):
                    value, token = await self.pools.reserve(source, deadline, location_id)
                elif isinstance(source, RemoteSource):
                    value = await self.remote.next_value(source, deadline)
                else:
                    raise ConfigurationError(
                        f"Unsupported identifier source {type(source).__name__}"
                    )
                state = "allocated"

                if not source.skip_automatic_assignment:
                    problems = self.validator.problems(identifier_type, value)
                    if problems:
                        state = "validation_failed"
                        if token is not None:
                            await self.pools.release(token)
                        raise GeneratedValueInvalid(
                            f"Source {source.name!r} produced {value!r} which is not a"
                            f" valid {identifier_type.name}: {'; '.join(problems)}",
                            value,
                        )
                state = "validated"

                result = GeneratedIdentifier(
                    value=value,
                    source_id=source.id,
                    identifier_type_id=identifier_type.id,
                    location_id=location_id,
                    sequence_number=sequence_number,
                    reservation_token=token,
                    status="reserved" if token else "committed",
                )
                if token is None:
                    self._log_issued(result)
                state = "committed"
            except IdentifierEngineError as exc:
                if state == "source_dispatched" and isinstance(exc, _UNAVAILABLE):
                    state = "source_unavailable"
                span.set_attribute("state", state)
                self._record_failure(source_id, started, state, exc)
                raise
            span.set_attribute("state", state)
            span.set_attribute("value", result.value)

        IDENTIFIERS_GENERATED.add(1)
        telemetry.record_generation(source_id, latency=self._timer() - started)
        logfire.info(
            "Generated identifier",
            identifier_type_id=identifier_type_id,
            source_id=source_id,
            status=result.status,
        )
        return result

    def _check_character(self, identifier_type: IdentifierType, value: str) -> str:
        algorithm = get_algorithm(
            identifier_type.check_digit_algorithm, identifier_type.check_digit_alphabet
        )
        return algorithm.compute(value) if algorithm else ""

    def _log_issued(self, result: GeneratedIdentifier, manual: bool = False) -> None:
        self.store.record_issued(
            IssuedIdentifier(
                value=result.value,
                identifier_type_id=result.identifier_type_id,
                source_id=result.source_id,
                location_id=result.location_id,
                issued_at=result.issued_at,
                manual=manual,
            )
        )

    def _record_failure(
        self, source_id: str, started: float, state: AttemptState, exc: IdentifierEngineError
    ) -> None:
        GENERATION_FAILURES.add(1, {"code": exc.code, "state": state})
        telemetry.record_generation(
            source_id, latency=self._timer() - started, error_code=exc.code
        )
        self.error_handler.handle(f"Identifier generation failed in state {state}", exc)

    async def commit_reservation(self, token: str) -> GeneratedIdentifier:
        """Commit a pool reservation and log the identifier as issued."""
        source_id, entry = self.pools.lookup(token)
        source = self.store.get_source(source_id)
        value = await self.pools.commit(token)
        result = GeneratedIdentifier(
            value=value,
            source_id=source_id,
            identifier_type_id=source.identifier_type_id if source else "",
            location_id=entry.location_id,
        )
        self._log_issued(result)
        logfire.info("Committed reservation", source_id=source_id)
        return result

    async def release_reservation(self, token: str) -> str:
        """Return a pool reservation's identifier to the pool."""
        return await self.pools.release(token)

    async def validate_manual_identifier(
        self,
        identifier_type_id: str,
        value: str,
        location_id: str | None = None,
    ) -> IdentifierType:
        """Check a manually entered ``value`` against its identifier type.

        Format, check digit and uniqueness (per ``uniqueness_behavior``,
        against the generation log) are all checked.

        Raises:
            NotFound: If the identifier type does not exist.
            InvalidIdentifier: With every reason the value was rejected.
        """
        identifier_type = self.store.get_identifier_type(identifier_type_id)
        if identifier_type is None:
            raise NotFound(
                f"Unknown identifier type {identifier_type_id}",
                [FieldError("identifier_type_id", "does not exist")],
            )
        reasons = self.validator.problems(identifier_type, value)
        if identifier_type.location_behavior == "REQUIRED" and location_id is None:
            reasons.append("a location is required for this identifier type")
        if not reasons and self._is_duplicate(identifier_type, value, location_id):
            reasons.append("identifier is already in use")
        if reasons:
            raise InvalidIdentifier("; ".join(reasons), reasons)
        return identifier_type

    async def record_manual_identifier(
        self,
        identifier_type_id: str,
        value: str,
        location_id: str | None = None,
    ) -> IssuedIdentifier:
        """Validate a manually entered value and add it to the generation log."""
        await self.validate_manual_identifier(identifier_type_id, value, location_id)
        record = IssuedIdentifier(
            value=value,
            identifier_type_id=identifier_type_id,
            location_id=location_id,
            manual=True,
        )
        self.store.record_issued(record)
        logfire.info(
            "Recorded manual identifier",
            identifier_type_id=identifier_type_id,
            location_id=location_id,
        )
        return record

    def _is_duplicate(
        self, identifier_type: IdentifierType, value: str, location_id: str | None
    ) -> bool:
        behavior = identifier_type.uniqueness_behavior
        if behavior == "NOT_UNIQUE":
            return False
        for record in self.store.list_issued(identifier_type.id):
            if record.value != value:
                continue
            if behavior == "UNIQUE" or record.location_id == location_id:
                return True
        return False


__all__ = ["GenerationService"]
