# SPDX-License-Identifier: MIT
"""Format validation of finished identifiers against their identifier type."""

from __future__ import annotations

import re
from functools import lru_cache

from idgen.core.check_digit import get_algorithm
from idgen.models import IdentifierType


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


class IdentifierValidator:
    """Check identifiers against an :class:`IdentifierType` format contract.

    A value is valid when it is non-blank, fully matches ``format_regex`` (if
    one is configured) and, when the type declares a check-digit algorithm,
    ends in a correct check character.
    """

    def problems(self, identifier_type: IdentifierType, value: str) -> list[str]:
        """Return every reason ``value`` is invalid for ``identifier_type``."""
        reasons: list[str] = []
        if not value or not value.strip():
            return ["identifier is blank"]
        if value != value.strip():
            reasons.append("identifier has surrounding whitespace")
        pattern = identifier_type.format_regex
        if pattern and _compiled(pattern).fullmatch(value) is None:
            hint = identifier_type.format_description or pattern
            reasons.append(f"identifier does not match the required format ({hint})")
        algorithm = get_algorithm(
            identifier_type.check_digit_algorithm,
            identifier_type.check_digit_alphabet,
        )
        if algorithm is not None and not algorithm.verify(value):
            reasons.append(f"check digit is not valid for {algorithm.name}")
        return reasons

    def is_valid(self, identifier_type: IdentifierType, value: str) -> bool:
        """Return ``True`` when ``value`` satisfies ``identifier_type``."""
        return not self.problems(identifier_type, value)


__all__ = ["IdentifierValidator"]
