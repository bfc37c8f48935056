# SPDX-License-Identifier: MIT
"""Validated writes of identifier types, sources and auto-generation policies.

Every operation validates its whole input before touching the store and
reports problems as a :class:`~idgen.errors.ConfigurationError` carrying one
:class:`~idgen.errors.FieldError` per offending field, so an admin screen can
highlight each of them at once.
"""

from __future__ import annotations

from typing import Any, Mapping

import logfire
from pydantic import BaseModel, TypeAdapter, ValidationError

from idgen.core.check_digit import get_algorithm
from idgen.errors import ConfigurationError, FieldError, NotFound
from idgen.io_utils.store import StateStore
from idgen.models import (
    REVEAL_SECRETS,
    SOURCE_ADAPTER,
    AutoGenerationPolicy,
    IdentifierSource,
    IdentifierType,
    PoolSource,
    SequentialSource,
)

_SOURCE_KINDS = ("sequential", "pool", "remote")
_IMMUTABLE = ("id", "kind")


def _field_errors(exc: ValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for error in exc.errors():
        loc = [str(part) for part in error["loc"]]
        # Discriminated unions prefix locations with the variant tag.
        if loc and loc[0] in _SOURCE_KINDS:
            loc = loc[1:]
        message = error["msg"].removeprefix("Value error, ")
        errors.append(FieldError(".".join(loc) or "__root__", message))
    return errors


def _validate(
    schema: type[BaseModel] | TypeAdapter[Any], data: Mapping[str, Any], label: str
) -> Any:
    try:
        if isinstance(schema, TypeAdapter):
            return schema.validate_python(dict(data))
        return schema.model_validate(dict(data))
    except ValidationError as exc:
        errors = _field_errors(exc)
        summary = "; ".join(f"{err.field}: {err.message}" for err in errors)
        raise ConfigurationError(f"Invalid {label}: {summary}", errors) from exc


def _as_dict(spec: BaseModel | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(spec, BaseModel):
        return spec.model_dump(context={REVEAL_SECRETS: True})
    return dict(spec)


class ConfigurationService:
    """Create, update and retire identifier configuration records."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    # -- identifier types ------------------------------------------------------

    def create_identifier_type(
        self, spec: IdentifierType | Mapping[str, Any]
    ) -> IdentifierType:
        """Validate and store a new identifier type."""
        data = _as_dict(spec)
        identifier_type: IdentifierType = _validate(IdentifierType, data, "identifier type")
        if self.store.get_identifier_type(identifier_type.id) is not None:
            raise ConfigurationError(
                f"Identifier type {identifier_type.id} already exists",
                [FieldError("id", "already exists")],
            )
        self._check_type_name(identifier_type)
        self.store.save_identifier_type(identifier_type)
        logfire.info(
            "Created identifier type",
            identifier_type_id=identifier_type.id,
            name=identifier_type.name,
        )
        return identifier_type

    def update_identifier_type(
        self, type_id: str, changes: Mapping[str, Any]
    ) -> IdentifierType:
        """Apply ``changes`` to an identifier type and revalidate it."""
        current = self.get_identifier_type(type_id)
        self._reject_immutable(changes)
        data = current.model_dump()
        data.update(changes)
        identifier_type: IdentifierType = _validate(IdentifierType, data, "identifier type")
        self._check_type_name(identifier_type)
        for source in self.list_sources(type_id):
            self._check_check_digit(identifier_type, source)
        self.store.save_identifier_type(identifier_type)
        logfire.info(
            "Updated identifier type",
            identifier_type_id=type_id,
            fields=sorted(changes),
        )
        return identifier_type

    def retire_identifier_type(self, type_id: str) -> IdentifierType:
        """Mark an identifier type retired."""
        identifier_type = self.get_identifier_type(type_id).model_copy(
            update={"retired": True}
        )
        self.store.save_identifier_type(identifier_type)
        logfire.info("Retired identifier type", identifier_type_id=type_id)
        return identifier_type

    def get_identifier_type(self, type_id: str) -> IdentifierType:
        identifier_type = self.store.get_identifier_type(type_id)
        if identifier_type is None:
            raise NotFound(
                f"Unknown identifier type {type_id}",
                [FieldError("identifier_type_id", "does not exist")],
            )
        return identifier_type

    def list_identifier_types(self, include_retired: bool = False) -> list[IdentifierType]:
        return [
            t for t in self.store.list_identifier_types() if include_retired or not t.retired
        ]

    def _check_type_name(self, identifier_type: IdentifierType) -> None:
        if identifier_type.retired:
            return
        for other in self.store.list_identifier_types():
            if (
                other.id != identifier_type.id
                and not other.retired
                and other.name.casefold() == identifier_type.name.casefold()
            ):
                raise ConfigurationError(
                    f"Identifier type name {identifier_type.name!r} is already in use",
                    [FieldError("name", "is already in use")],
                )

    # -- identifier sources ----------------------------------------------------

    def create_identifier_source(
        self, spec: IdentifierSource | Mapping[str, Any]
    ) -> IdentifierSource:
        """Validate and store a new source of any kind.

        Identifiers supplied with a pool source are loaded into the pool; the
        stored configuration record keeps none of them.
        """
        data = _as_dict(spec)
        source: IdentifierSource = _validate(SOURCE_ADAPTER, data, "identifier source")
        if self.store.get_source(source.id) is not None:
            raise ConfigurationError(
                f"Identifier source {source.id} already exists",
                [FieldError("id", "already exists")],
            )
        identifier_type = self.get_identifier_type(source.identifier_type_id)
        self._check_source_name(source)
        self._check_check_digit(identifier_type, source)

        initial: list[str] = []
        if isinstance(source, PoolSource):
            initial = source.identifiers
            source = source.model_copy(update={"identifiers": []})
        self.store.save_source(source)
        if initial:
            self.store.add_pool_entries(source.id, initial)
        logfire.info(
            "Created identifier source",
            source_id=source.id,
            kind=source.kind,
            identifier_type_id=source.identifier_type_id,
            pooled=len(initial),
        )
        return source

    def update_identifier_source(
        self, source_id: str, changes: Mapping[str, Any]
    ) -> IdentifierSource:
        """Apply ``changes`` to a source and revalidate it.

        For pool sources, ``identifiers`` in ``changes`` are appended to the
        pool rather than replacing it.
        """
        current = self.get_source(source_id)
        self._reject_immutable(changes)
        data = current.model_dump(context={REVEAL_SECRETS: True})
        data.update(changes)
        source: IdentifierSource = _validate(SOURCE_ADAPTER, data, "identifier source")
        identifier_type = self.get_identifier_type(source.identifier_type_id)
        self._check_source_name(source)
        self._check_check_digit(identifier_type, source)

        added = 0
        if isinstance(source, PoolSource) and source.identifiers:
            added = self.store.add_pool_entries(source.id, source.identifiers)
            source = source.model_copy(update={"identifiers": []})
        self.store.save_source(source)
        logfire.info(
            "Updated identifier source",
            source_id=source_id,
            fields=sorted(changes),
            pooled=added,
        )
        return source

    def retire_identifier_source(self, source_id: str) -> IdentifierSource:
        """Mark a source retired; policies pointing at it stop resolving."""
        source = self.get_source(source_id).model_copy(update={"retired": True})
        self.store.save_source(source)
        logfire.info("Retired identifier source", source_id=source_id)
        return source

    def get_source(self, source_id: str) -> IdentifierSource:
        source = self.store.get_source(source_id)
        if source is None:
            raise NotFound(
                f"Unknown identifier source {source_id}",
                [FieldError("source_id", "does not exist")],
            )
        return source

    def list_sources(
        self, type_id: str | None = None, include_retired: bool = False
    ) -> list[IdentifierSource]:
        """Return sources, optionally only those serving ``type_id``."""
        return [
            source
            for source in self.store.list_sources()
            if (type_id is None or source.identifier_type_id == type_id)
            and (include_retired or not source.retired)
        ]

    def _check_source_name(self, source: IdentifierSource) -> None:
        if source.retired:
            return
        for other in self.store.list_sources():
            if (
                other.id != source.id
                and not other.retired
                and other.name.casefold() == source.name.casefold()
            ):
                raise ConfigurationError(
                    f"Identifier source name {source.name!r} is already in use",
                    [FieldError("name", "is already in use")],
                )

    @staticmethod
    def _check_check_digit(
        identifier_type: IdentifierType, source: IdentifierSource
    ) -> None:
        """Reject sequential sources whose symbols the check digit cannot weigh."""
        if not isinstance(source, SequentialSource):
            return
        algorithm = get_algorithm(
            identifier_type.check_digit_algorithm, identifier_type.check_digit_alphabet
        )
        alphabet = getattr(algorithm, "alphabet", None)
        if alphabet is None:
            return
        errors = [
            FieldError(name, f"contains symbols {algorithm.name} cannot weigh")
            for name in ("base_character_set", "prefix", "suffix")
            if set(getattr(source, name)) - set(alphabet)
        ]
        if errors:
            raise ConfigurationError(
                f"Source {source.name!r} is incompatible with the"
                f" {algorithm.name} check digit of {identifier_type.name!r}",
                errors,
            )

    # -- policies --------------------------------------------------------------

    def upsert_policy(
        self,
        identifier_type_id: str,
        location_id: str | None,
        source_id: str,
        automatic_generation: bool = True,
        manual_entry: bool = False,
    ) -> AutoGenerationPolicy:
        """Create or replace the policy for ``(type, location)``.

        At most one policy exists per pair; the global policy of a type has
        ``location_id=None``.
        """
        identifier_type = self.get_identifier_type(identifier_type_id)
        source = self.get_source(source_id)
        errors: list[FieldError] = []
        if identifier_type.retired:
            errors.append(FieldError("identifier_type_id", "is retired"))
        if source.retired:
            errors.append(FieldError("source_id", "is retired"))
        if source.identifier_type_id != identifier_type_id:
            errors.append(FieldError("source_id", "belongs to another identifier type"))
        if not automatic_generation and not manual_entry:
            errors.append(
                FieldError(
                    "manual_entry",
                    "must be allowed when automatic generation is disabled",
                )
            )
        if errors:
            raise ConfigurationError("Invalid auto-generation policy", errors)

        existing = next(
            (
                policy
                for policy in self.store.list_policies()
                if policy.identifier_type_id == identifier_type_id
                and policy.location_id == location_id
            ),
            None,
        )
        data: dict[str, Any] = {
            "identifier_type_id": identifier_type_id,
            "location_id": location_id,
            "source_id": source_id,
            "automatic_generation": automatic_generation,
            "manual_entry": manual_entry,
        }
        if existing is not None:
            data["id"] = existing.id
        policy: AutoGenerationPolicy = _validate(
            AutoGenerationPolicy, data, "auto-generation policy"
        )
        self.store.save_policy(policy)
        logfire.info(
            "Saved auto-generation policy",
            policy_id=policy.id,
            identifier_type_id=identifier_type_id,
            location_id=location_id,
            source_id=source_id,
            replaced=existing is not None,
        )
        return policy

    def delete_policy(self, policy_id: str) -> None:
        if not self.store.delete_policy(policy_id):
            raise NotFound(
                f"Unknown auto-generation policy {policy_id}",
                [FieldError("id", "does not exist")],
            )
        logfire.info("Deleted auto-generation policy", policy_id=policy_id)

    def list_policies(self, type_id: str | None = None) -> list[AutoGenerationPolicy]:
        return [
            policy
            for policy in self.store.list_policies()
            if type_id is None or policy.identifier_type_id == type_id
        ]

    @staticmethod
    def _reject_immutable(changes: Mapping[str, Any]) -> None:
        errors = [FieldError(name, "cannot be changed") for name in _IMMUTABLE if name in changes]
        if errors:
            raise ConfigurationError("Immutable fields cannot be updated", errors)


__all__ = ["ConfigurationService"]
