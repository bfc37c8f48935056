# SPDX-License-Identifier: MIT
"""Positional encoding of counters over arbitrary character alphabets.

The alphabet is treated as the digits of a numeral system whose base is the
number of distinct symbols. ``alphabet[0]`` plays the role of zero and is
also the padding symbol, so padded bodies decode to the same value.
"""

from __future__ import annotations

from idgen.errors import CapacityExhausted, InvalidAlphabet


def normalise_alphabet(alphabet: str) -> str:
    """Return ``alphabet`` with duplicate symbols removed, order preserved.

    Raises:
        InvalidAlphabet: If fewer than two distinct symbols remain.
    """
    symbols = "".join(dict.fromkeys(alphabet))
    if len(symbols) < 2:
        raise InvalidAlphabet(
            f"Base character set {alphabet!r} needs at least two distinct symbols"
        )
    return symbols


def body_width(min_length: int, prefix: str = "", suffix: str = "") -> int:
    """Return the padded body width implied by ``min_length``."""
    return max(0, min_length - len(prefix) - len(suffix))


def capacity(alphabet: str, max_length: int, prefix: str = "", suffix: str = "") -> int:
    """Return the largest counter encodable within ``max_length``."""
    symbols = normalise_alphabet(alphabet)
    room = max_length - len(prefix) - len(suffix)
    if room <= 0:
        return -1
    return len(symbols) ** room - 1


def _digits(n: int, symbols: str) -> str:
    base = len(symbols)
    if n == 0:
        return symbols[0]
    out: list[str] = []
    while n:
        n, rem = divmod(n, base)
        out.append(symbols[rem])
    return "".join(reversed(out))


def encode(
    n: int,
    alphabet: str,
    min_length: int,
    max_length: int,
    prefix: str = "",
    suffix: str = "",
) -> str:
    """Encode counter ``n`` as ``prefix + body + suffix``.

    Args:
        n: Non-negative counter value.
        alphabet: Ordered symbols forming the numeral system.
        min_length: Minimum length of the full identifier; the body is
            left-padded with ``alphabet[0]`` to reach it.
        max_length: Maximum length of the full identifier.
        prefix: Literal text placed before the body.
        suffix: Literal text placed after the body.

    Returns:
        The encoded identifier without any check character.

    Raises:
        ValueError: If ``n`` is negative.
        InvalidAlphabet: If the alphabet has fewer than two distinct symbols.
        CapacityExhausted: If ``n`` does not fit within ``max_length``.
    """
    if n < 0:
        raise ValueError(f"Counter must be non-negative, got {n}")
    symbols = normalise_alphabet(alphabet)
    body = _digits(n, symbols).rjust(body_width(min_length, prefix, suffix), symbols[0])
    room = max_length - len(prefix) - len(suffix)
    if len(body) > room:
        raise CapacityExhausted(
            f"Counter {n} needs {len(body)} symbols but only {max(room, 0)} fit"
            f" within max length {max_length}"
        )
    return f"{prefix}{body}{suffix}"


def decode(identifier: str, alphabet: str, prefix: str = "", suffix: str = "") -> int:
    """Return the counter encoded in ``identifier``.

    Raises:
        ValueError: If the prefix or suffix do not match or the body holds a
            symbol outside the alphabet.
    """
    symbols = normalise_alphabet(alphabet)
    if (
        len(identifier) < len(prefix) + len(suffix)
        or not identifier.startswith(prefix)
        or not identifier.endswith(suffix)
    ):
        raise ValueError(f"{identifier!r} does not carry {prefix!r}/{suffix!r}")
    body = identifier[len(prefix) : len(identifier) - len(suffix)]
    if not body:
        raise ValueError(f"{identifier!r} has an empty body")
    index = {symbol: i for i, symbol in enumerate(symbols)}
    base = len(symbols)
    value = 0
    for char in body:
        try:
            value = value * base + index[char]
        except KeyError:
            raise ValueError(
                f"Symbol {char!r} in {identifier!r} is not in the alphabet"
            ) from None
    return value


__all__ = ["body_width", "capacity", "decode", "encode", "normalise_alphabet"]
