# SPDX-License-Identifier: MIT
"""Pure identifier arithmetic shared by every source strategy.

Exports:
    encode: Encode a counter over an arbitrary alphabet.
    decode: Recover the counter from an encoded identifier.
    capacity: Largest counter a configured width can hold.
    compute_check_digit: Return the check character for a body.
    verify_check_digit: Verify the trailing check character.
"""

from .check_digit import compute as compute_check_digit
from .check_digit import verify as verify_check_digit
from .encoder import capacity, decode, encode

__all__ = [
    "capacity",
    "compute_check_digit",
    "decode",
    "encode",
    "verify_check_digit",
]
