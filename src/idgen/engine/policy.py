# SPDX-License-Identifier: MIT
"""Resolve which source serves an identifier type at a location."""

from __future__ import annotations

import logfire

from idgen.errors import ConfigurationError, FieldError, NoPolicyConfigured, NotFound
from idgen.io_utils.store import StateStore
from idgen.models import AutoGenerationPolicy, EffectivePolicy


class PolicyResolver:
    """Select the auto-generation policy for a ``(type, location)`` pair.

    A policy bound to the exact location wins over the global policy of the
    type. Retired types and sources are never returned.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def find(
        self, identifier_type_id: str, location_id: str | None
    ) -> AutoGenerationPolicy | None:
        """Return the stored policy for exactly ``(type, location)``."""
        for policy in self.store.list_policies():
            if (
                policy.identifier_type_id == identifier_type_id
                and policy.location_id == location_id
            ):
                return policy
        return None

    def resolve(
        self, identifier_type_id: str, location_id: str | None = None
    ) -> EffectivePolicy:
        """Return the effective policy for ``identifier_type_id``.

        Raises:
            NotFound: If the identifier type or the policy's source is unknown.
            ConfigurationError: If either record is retired or the source
                serves another type.
            NoPolicyConfigured: If neither a location nor a global policy
                exists.
        """
        identifier_type = self.store.get_identifier_type(identifier_type_id)
        if identifier_type is None:
            raise NotFound(
                f"Unknown identifier type {identifier_type_id}",
                [FieldError("identifier_type_id", "does not exist")],
            )
        if identifier_type.retired:
            raise ConfigurationError(
                f"Identifier type {identifier_type.name!r} is retired",
                [FieldError("identifier_type_id", "is retired")],
            )

        policy = None
        location_specific = False
        if location_id is not None:
            policy = self.find(identifier_type_id, location_id)
            location_specific = policy is not None
        if policy is None:
            policy = self.find(identifier_type_id, None)
        if policy is None:
            raise NoPolicyConfigured(
                f"No auto-generation policy for {identifier_type.name!r}"
                + (f" at location {location_id}" if location_id else ""),
                [FieldError("identifier_type_id", "has no policy")],
            )

        source = self.store.get_source(policy.source_id)
        if source is None:
            raise NotFound(
                f"Policy {policy.id} references unknown source {policy.source_id}",
                [FieldError("source_id", "does not exist")],
            )
        if source.retired:
            raise ConfigurationError(
                f"Identifier source {source.name!r} is retired",
                [FieldError("source_id", "is retired")],
            )
        if source.identifier_type_id != identifier_type_id:
            raise ConfigurationError(
                f"Identifier source {source.name!r} serves another identifier type",
                [FieldError("source_id", "belongs to another identifier type")],
            )

        logfire.debug(
            "Resolved auto-generation policy",
            identifier_type_id=identifier_type_id,
            location_id=location_id,
            policy_id=policy.id,
            source_id=source.id,
            location_specific=location_specific,
        )
        return EffectivePolicy(
            policy=policy,
            identifier_type=identifier_type,
            source=source,
            location_specific=location_specific,
        )


__all__ = ["PolicyResolver"]
