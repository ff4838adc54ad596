"""
MRN issuer.

Issues values for system-generated identifier systems. Values are random
with 130 bits of entropy; no uniqueness lookup happens here, the unique
(value, system) constraint on the identifier table is the backstop.
"""

import secrets
from typing import Optional

TOKEN_BITS = 130
_DIGITS = "0123456789abcdefghijklmnopqrstuv"


def _to_base32(number: int) -> str:
    if number == 0:
        return "0"
    chars = []
    while number:
        number, remainder = divmod(number, 32)
        chars.append(_DIGITS[remainder])
    return "".join(reversed(chars))


def generate_token(max_length: Optional[int] = None) -> str:
    """Random 130-bit token in radix 32, optionally truncated to max_length."""
    token = _to_base32(secrets.randbits(TOKEN_BITS))
    if max_length is not None:
        return token[:max_length]
    return token


class MrnIssuer:
    """Generates MRN values, optionally prefixed."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def generate_value(self) -> str:
        return f"{self.prefix}{generate_token()}"
