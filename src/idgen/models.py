# SPDX-License-Identifier: MIT
"""Pydantic models describing identifier types, sources, policies and results.

These definitions are the contract between the configuration surface, the
allocation engine and the durable store. Identifier sources form a tagged
union discriminated on ``kind`` so each variant is validated and dispatched
by type rather than by inspecting free-form strings.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    SerializationInfo,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)

from idgen.core.check_digit import DEFAULT_MODN_ALPHABET, get_algorithm
from idgen.errors import ConfigurationError

REVEAL_SECRETS = "reveal_secrets"

LocationBehavior = Literal["REQUIRED", "NOT_USED"]
UniquenessBehavior = Literal["UNIQUE", "NOT_UNIQUE", "UNIQUE_PER_LOCATION"]
PoolEntryState = Literal["available", "reserved", "used"]
AttemptState = Literal[
    "start",
    "policy_selected",
    "source_dispatched",
    "allocated",
    "validated",
    "committed",
    "validation_failed",
    "source_unavailable",
]


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StrictModel(BaseModel):
    """Base model with strict settings to prevent shape drift."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)


class IdentifierType(StrictModel):
    """Named category of identifier with a format contract."""

    id: str = Field(default_factory=_new_id, min_length=1)
    name: Annotated[str, Field(min_length=1, description="Display name.")]
    description: str = ""
    format_regex: str | None = Field(
        default=None, description="Regular expression the full value must match."
    )
    format_description: str | None = Field(
        default=None, description="Human readable description of the format."
    )
    required: bool = False
    location_behavior: LocationBehavior = "NOT_USED"
    uniqueness_behavior: UniquenessBehavior = "UNIQUE"
    check_digit_algorithm: str | None = Field(
        default=None, description="Registered check-digit algorithm name."
    )
    check_digit_alphabet: str = Field(
        default=DEFAULT_MODN_ALPHABET,
        description="Alphabet weighted by alphabet-based algorithms such as MODN.",
    )
    retired: bool = False

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("format_regex")
    @classmethod
    def _compile_regex(cls, value: str | None) -> str | None:
        """Reject patterns that do not compile."""
        if value in (None, ""):
            return None
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _known_algorithm(self) -> "IdentifierType":
        if self.check_digit_algorithm is not None:
            self.check_digit_algorithm = self.check_digit_algorithm.upper()
            try:
                get_algorithm(self.check_digit_algorithm, self.check_digit_alphabet)
            except ConfigurationError as exc:
                raise ValueError(str(exc)) from exc
        return self


class SourceBase(StrictModel):
    """Fields shared by every identifier source variant."""

    id: str = Field(default_factory=_new_id, min_length=1)
    name: Annotated[str, Field(min_length=1)]
    description: str = ""
    identifier_type_id: Annotated[str, Field(min_length=1)]
    retired: bool = False
    skip_automatic_assignment: bool = Field(
        default=False,
        description="Skip format validation of values issued by this source.",
    )


class SequentialSource(SourceBase):
    """Source encoding a durable monotonic counter."""

    kind: Literal["sequential"] = "sequential"
    prefix: str = ""
    suffix: str = ""
    base_character_set: str = "0123456789"
    min_length: int = Field(1, ge=1)
    max_length: int = Field(20, ge=1)
    first_identifier_base: int = Field(1, ge=0)

    @field_validator("base_character_set")
    @classmethod
    def _dedupe_alphabet(cls, value: str) -> str:
        symbols = "".join(dict.fromkeys(value))
        if len(symbols) < 2:
            raise ValueError("base_character_set needs at least two distinct symbols")
        return symbols

    @model_validator(mode="after")
    def _lengths_fit(self) -> "SequentialSource":
        floor = len(self.prefix) + len(self.suffix) + 1
        if self.min_length > self.max_length:
            raise ValueError(
                f"min_length ({self.min_length}) exceeds max_length ({self.max_length})"
            )
        if self.min_length < floor:
            raise ValueError(
                f"min_length ({self.min_length}) must leave room for prefix, suffix"
                f" and at least one symbol (>= {floor})"
            )
        return self


class PoolSource(SourceBase):
    """Source handing out a finite pre-loaded set of identifiers."""

    kind: Literal["pool"] = "pool"
    identifiers: list[str] = Field(
        default_factory=list, description="Identifiers loaded when created."
    )
    reservation_ttl: float | None = Field(
        default=None, gt=0, description="Seconds before a reservation expires."
    )

    @field_validator("identifiers")
    @classmethod
    def _clean_identifiers(cls, values: list[str]) -> list[str]:
        cleaned = [value.strip() for value in values if value and value.strip()]
        return list(dict.fromkeys(cleaned))


class RemoteSource(SourceBase):
    """Source delegating issuance to an external provider."""

    kind: Literal["remote"] = "remote"
    url: Annotated[str, Field(min_length=1)]
    username: str = ""
    password: SecretStr = SecretStr("")
    batch_size: int = Field(10, ge=1)
    low_water_mark: int = Field(2, ge=0)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value

    @field_serializer("password")
    def _dump_password(self, value: SecretStr, info: SerializationInfo) -> str:
        """Mask the password unless the store asks for the real value."""
        if info.context and info.context.get(REVEAL_SECRETS):
            return value.get_secret_value()
        return str(value)


IdentifierSource = Annotated[
    Union[SequentialSource, PoolSource, RemoteSource],
    Field(discriminator="kind"),
]
SOURCE_ADAPTER: TypeAdapter[SequentialSource | PoolSource | RemoteSource] = (
    TypeAdapter(IdentifierSource)
)


class AutoGenerationPolicy(StrictModel):
    """Rule mapping an identifier type and location to a source."""

    id: str = Field(default_factory=_new_id, min_length=1)
    identifier_type_id: Annotated[str, Field(min_length=1)]
    location_id: str | None = Field(
        default=None, description="Location the rule applies to; None is global."
    )
    source_id: Annotated[str, Field(min_length=1)]
    automatic_generation: bool = True
    manual_entry: bool = False


class EffectivePolicy(BaseModel):
    """Resolved policy together with the records it refers to."""

    policy: AutoGenerationPolicy
    identifier_type: IdentifierType
    source: IdentifierSource
    location_specific: bool

    @property
    def automatic_generation(self) -> bool:
        return self.policy.automatic_generation

    @property
    def manual_entry(self) -> bool:
        return self.policy.manual_entry


class GeneratedIdentifier(StrictModel):
    """Identifier handed to a caller by the generation service."""

    value: Annotated[str, Field(min_length=1)]
    source_id: str
    identifier_type_id: str
    location_id: str | None = None
    sequence_number: int | None = None
    issued_at: datetime = Field(default_factory=_utcnow)
    reservation_token: str | None = None
    status: Literal["committed", "reserved"] = "committed"


class PoolEntry(StrictModel):
    """Durable state of one pooled identifier."""

    value: str
    state: PoolEntryState = "available"
    token: str | None = None
    reserved_at: datetime | None = None
    expires_at: datetime | None = None
    location_id: str | None = None


class IssuedIdentifier(StrictModel):
    """Generation log record of an identifier that left the engine."""

    value: str
    identifier_type_id: str
    source_id: str | None = None
    location_id: str | None = None
    issued_at: datetime = Field(default_factory=_utcnow)
    manual: bool = False


class PoolStats(BaseModel):
    """Per-state counts of a pool source."""

    available: int = 0
    reserved: int = 0
    used: int = 0

    @property
    def total(self) -> int:
        return self.available + self.reserved + self.used


class Catalogue(StrictModel):
    """Declarative identifier setup loaded from YAML."""

    identifier_types: list[IdentifierType] = Field(default_factory=list)
    sources: list[IdentifierSource] = Field(default_factory=list)
    policies: list[AutoGenerationPolicy] = Field(default_factory=list)


class AppConfig(StrictModel):
    """File-based application configuration."""

    log_level: str = "INFO"
    logfire_token: str | None = None
    state_file: str | None = None
    catalogue_file: str | None = None
    allocation_attempts: int = Field(8, ge=1)
    retry_base_delay: float = Field(0.01, gt=0)
    retry_max_delay: float = Field(0.5, gt=0)
    sequence_batch_size: int = Field(1, ge=1)
    reservation_ttl: float = Field(300.0, gt=0)
    sweep_interval: float = Field(30.0, gt=0)
    remote_timeout: float = Field(10.0, gt=0)
    remote_attempts: int = Field(3, ge=1)
    circuit_failure_threshold: int = Field(5, ge=1)
    circuit_cooldown: float = Field(30.0, gt=0)


__all__ = [
    "REVEAL_SECRETS",
    "AppConfig",
    "AttemptState",
    "AutoGenerationPolicy",
    "Catalogue",
    "EffectivePolicy",
    "GeneratedIdentifier",
    "IdentifierSource",
    "IdentifierType",
    "IssuedIdentifier",
    "LocationBehavior",
    "PoolEntry",
    "PoolEntryState",
    "PoolSource",
    "PoolStats",
    "RemoteSource",
    "SOURCE_ADAPTER",
    "SequentialSource",
    "SourceBase",
    "StrictModel",
    "UniquenessBehavior",
]
