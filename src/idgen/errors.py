# SPDX-License-Identifier: MIT
"""Exception taxonomy for identifier generation and allocation.

Every error raised across the engine derives from
:class:`IdentifierEngineError` and carries a stable ``code`` so thin adapters
can map failures onto structured responses. ``retryable`` tells callers
whether repeating the same request may succeed without admin intervention.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    """Single validation problem attached to an input field."""

    field: str
    message: str


class IdentifierEngineError(Exception):
    """Base class for all engine failures."""

    code = "IDGEN_ERROR"
    retryable = False


class ConfigurationError(IdentifierEngineError):
    """Invalid identifier type, source or policy configuration."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, errors: list[FieldError] | None = None) -> None:
        super().__init__(message)
        self.errors: list[FieldError] = list(errors or [])


class NotFound(ConfigurationError):
    """Referenced configuration record does not exist."""

    code = "NOT_FOUND"


class InvalidAlphabet(ConfigurationError):
    """Base character set has fewer than two distinct symbols."""

    code = "INVALID_ALPHABET"


class UnsupportedAlphabet(ConfigurationError):
    """Identifier body contains symbols the check-digit algorithm cannot weigh."""

    code = "UNSUPPORTED_ALPHABET"


class NoPolicyConfigured(ConfigurationError):
    """No auto-generation policy matches the identifier type and location."""

    code = "NO_POLICY_CONFIGURED"


class CapacityExhausted(IdentifierEngineError):
    """Identifier space of a source is used up."""

    code = "CAPACITY_EXHAUSTED"


class PoolExhausted(CapacityExhausted):
    """Pool source has no available entries left."""

    code = "POOL_EXHAUSTED"


class ContentionError(IdentifierEngineError):
    """Transient conflict on durable state; retried internally."""

    code = "CONTENTION"
    retryable = True


class AllocationTimeout(IdentifierEngineError):
    """Allocation did not succeed within the bounded retry budget."""

    code = "ALLOCATION_TIMEOUT"
    retryable = True


class RemoteUnavailable(IdentifierEngineError):
    """Remote identifier provider failed, timed out or is circuit-broken."""

    code = "REMOTE_UNAVAILABLE"
    retryable = True


class GeneratedValueInvalid(IdentifierEngineError):
    """Generated value does not satisfy its own identifier type's format."""

    code = "GENERATED_VALUE_INVALID"

    def __init__(self, message: str, value: str | None = None) -> None:
        super().__init__(message)
        self.value = value


class ManualEntryRequired(IdentifierEngineError):
    """Policy disables automatic generation; caller must supply a value."""

    code = "MANUAL_ENTRY_REQUIRED"


class LocationRequired(IdentifierEngineError):
    """Identifier type requires a location but none was supplied."""

    code = "LOCATION_REQUIRED"


class ReservationNotFound(IdentifierEngineError):
    """Reservation token is unknown, already settled or expired."""

    code = "RESERVATION_NOT_FOUND"


class InvalidIdentifier(IdentifierEngineError):
    """Manually entered identifier failed validation."""

    code = "INVALID_IDENTIFIER"

    def __init__(self, message: str, reasons: list[str] | None = None) -> None:
        super().__init__(message)
        self.reasons: list[str] = list(reasons or [])


class Cancelled(IdentifierEngineError):
    """Deadline elapsed or cancellation was requested before completion."""

    code = "CANCELLED"
    retryable = True


_ADMIN_MESSAGE = (
    "Identifier generation is misconfigured or out of capacity. "
    "Ask an administrator to review the identifier source settings."
)
_RETRY_MESSAGE = "The identifier service is busy. Please try again."


def user_message(exc: BaseException) -> str:
    """Return the user-facing text for ``exc``.

    Configuration and capacity problems need an administrator, while
    contention and remote outages are worth retrying.
    """
    if isinstance(exc, ManualEntryRequired):
        return "Enter the identifier manually for this location."
    if isinstance(exc, LocationRequired):
        return "Select a location before generating this identifier."
    if isinstance(exc, InvalidIdentifier):
        return f"The identifier is not valid: {exc}"
    if isinstance(exc, (ConfigurationError, CapacityExhausted, GeneratedValueInvalid)):
        return _ADMIN_MESSAGE
    if isinstance(exc, IdentifierEngineError) and exc.retryable:
        return _RETRY_MESSAGE
    return str(exc) or _RETRY_MESSAGE


__all__ = [
    "AllocationTimeout",
    "Cancelled",
    "CapacityExhausted",
    "ConfigurationError",
    "ContentionError",
    "FieldError",
    "GeneratedValueInvalid",
    "IdentifierEngineError",
    "InvalidAlphabet",
    "InvalidIdentifier",
    "LocationRequired",
    "ManualEntryRequired",
    "NoPolicyConfigured",
    "NotFound",
    "PoolExhausted",
    "RemoteUnavailable",
    "ReservationNotFound",
    "UnsupportedAlphabet",
    "user_message",
]
