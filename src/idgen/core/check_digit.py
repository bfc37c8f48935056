# SPDX-License-Identifier: MIT
"""Pluggable check-digit algorithms.

``MOD10`` is the classic Luhn algorithm over decimal digits. ``MODN`` is the
Luhn mod N generalisation: code points come from an arbitrary alphabet and
the weighted sum is reduced modulo the alphabet size, so alphanumeric bodies
can carry a check character too. Further algorithms can be registered by
name with :func:`register_algorithm`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from idgen.errors import ConfigurationError, UnsupportedAlphabet

DECIMAL_ALPHABET = "0123456789"
DEFAULT_MODN_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class CheckDigitAlgorithm(ABC):
    """Strategy computing and verifying a trailing check character."""

    name: str

    @abstractmethod
    def compute(self, body: str) -> str:
        """Return the check character for ``body``."""

    @abstractmethod
    def verify(self, identifier: str) -> bool:
        """Return ``True`` when the last character checks ``identifier``."""


class LuhnModN(CheckDigitAlgorithm):
    """Luhn mod N over an ordered alphabet."""

    name = "MODN"

    def __init__(self, alphabet: str = DEFAULT_MODN_ALPHABET) -> None:
        symbols = "".join(dict.fromkeys(alphabet))
        if len(symbols) < 2:
            raise ConfigurationError(
                f"Check-digit alphabet {alphabet!r} needs at least two symbols"
            )
        self.alphabet = symbols
        self._index = {symbol: i for i, symbol in enumerate(symbols)}

    def _code_points(self, text: str) -> list[int]:
        try:
            return [self._index[char] for char in text]
        except KeyError as exc:
            raise UnsupportedAlphabet(
                f"{self.name} cannot weigh symbol {exc.args[0]!r} in {text!r}"
            ) from None

    def _weighted_sum(self, points: list[int], double_first: bool) -> int:
        n = len(self.alphabet)
        factor = 2 if double_first else 1
        total = 0
        for point in reversed(points):
            addend = factor * point
            total += addend // n + addend % n
            factor = 3 - factor
        return total

    def compute(self, body: str) -> str:
        if not body:
            raise UnsupportedAlphabet(f"{self.name} needs a non-empty body")
        n = len(self.alphabet)
        total = self._weighted_sum(self._code_points(body), double_first=True)
        return self.alphabet[(n - total % n) % n]

    def verify(self, identifier: str) -> bool:
        if len(identifier) < 2:
            return False
        try:
            points = self._code_points(identifier)
        except UnsupportedAlphabet:
            return False
        return self._weighted_sum(points, double_first=False) % len(self.alphabet) == 0


class LuhnMod10(LuhnModN):
    """Standard Luhn check digit for purely numeric bodies."""

    name = "MOD10"

    def __init__(self, alphabet: str = DECIMAL_ALPHABET) -> None:
        super().__init__(DECIMAL_ALPHABET)


_REGISTRY: dict[str, Callable[[str], CheckDigitAlgorithm]] = {
    "MOD10": LuhnMod10,
    "MODN": LuhnModN,
}


def register_algorithm(name: str, factory: Callable[[str], CheckDigitAlgorithm]) -> None:
    """Register ``factory`` under ``name``.

    ``factory`` receives the configured alphabet and returns an algorithm.
    """
    _REGISTRY[name.upper()] = factory


def available_algorithms() -> list[str]:
    """Return the registered algorithm names."""
    return sorted(_REGISTRY)


def get_algorithm(
    name: str | CheckDigitAlgorithm | None,
    alphabet: str = DEFAULT_MODN_ALPHABET,
) -> CheckDigitAlgorithm | None:
    """Return the algorithm registered as ``name``.

    Raises:
        ConfigurationError: If ``name`` is not registered.
    """
    if name is None or isinstance(name, CheckDigitAlgorithm):
        return name
    try:
        factory = _REGISTRY[name.upper()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown check-digit algorithm {name!r};"
            f" expected one of {', '.join(available_algorithms())}"
        ) from None
    return factory(alphabet)


def compute(body: str, algorithm: str | CheckDigitAlgorithm | None) -> str:
    """Return the check character for ``body`` or ``""`` without an algorithm."""
    strategy = get_algorithm(algorithm)
    return strategy.compute(body) if strategy else ""


def verify(identifier: str, algorithm: str | CheckDigitAlgorithm | None) -> bool:
    """Return ``True`` when ``identifier`` ends in a valid check character."""
    strategy = get_algorithm(algorithm)
    return strategy.verify(identifier) if strategy else True


__all__ = [
    "CheckDigitAlgorithm",
    "DECIMAL_ALPHABET",
    "DEFAULT_MODN_ALPHABET",
    "LuhnMod10",
    "LuhnModN",
    "available_algorithms",
    "compute",
    "get_algorithm",
    "register_algorithm",
    "verify",
]
