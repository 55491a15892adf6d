"""ULID identifiers (Crockford base32) for build ids and scratch directories.

A ULID is 48 bits of millisecond timestamp followed by 80 random bits, so ids
sort by creation time and two runs started in the same millisecond still
differ.
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from typing import Final

_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_DECODE: Final[dict[str, int]] = {ch: i for i, ch in enumerate(_ALPHABET)}
ULID_LENGTH: Final[int] = 26


def _encode_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        value, rem = divmod(value, 32)
        chars.append(_ALPHABET[rem])
    return "".join(reversed(chars))


def generate_ulid(ts_ms: int | None = None) -> str:
    """Generate a 26-char ULID string.

    Args:
        ts_ms: Optional timestamp in milliseconds; defaults to current time
    """
    if ts_ms is None:
        ts_ms = int(time.time() * 1000)
    ts = ts_ms & ((1 << 48) - 1)
    rnd = int.from_bytes(os.urandom(10), "big")
    return _encode_base32((ts << 80) | rnd, ULID_LENGTH)


def is_ulid(s: str) -> bool:
    return (
        isinstance(s, str)
        and len(s) == ULID_LENGTH
        and s[0] in "01234567"
        and all(ch in _DECODE for ch in s)
    )


def ulid_timestamp(s: str) -> datetime:
    """Creation time encoded in the first 10 characters of a ULID."""
    if not is_ulid(s):
        raise ValueError(f"not a ULID: {s!r}")
    ms = 0
    for ch in s[:10]:
        ms = ms * 32 + _DECODE[ch]
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
