"""
Identity Generator — Sortable Unique IDs

Every entity id is a 26-character Crockford base-32 string:

    TTTTTTTTTTRRRRRRRRRRRRRRRR
    |--------||--------------|
     10 chars     16 chars
     ms time      randomness

optionally prefixed with a type tag and an underscore (``mem_01J...``).
Ids generated in different milliseconds sort lexicographically in
generation order. Within one millisecond the order is random.
"""

from __future__ import annotations

import secrets
import time
from typing import Optional

from mnemos.errors import InvalidIdentifier

# Crockford's alphabet: no I, L, O, U
ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ENCODING_LEN = len(ENCODING)
TIME_LEN = 10
RANDOM_LEN = 16
ID_LEN = TIME_LEN + RANDOM_LEN
SEPARATOR = "_"

_DECODE = {ch: i for i, ch in enumerate(ENCODING)}


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return time.time_ns() // 1_000_000


def encode_time(ms: int) -> str:
    """Encode a millisecond timestamp as 10 left-padded base-32 characters."""
    if ms < 0 or ms >= ENCODING_LEN ** TIME_LEN:
        raise ValueError(f"timestamp out of range: {ms}")
    chars = []
    for _ in range(TIME_LEN):
        ms, rem = divmod(ms, ENCODING_LEN)
        chars.append(ENCODING[rem])
    return "".join(reversed(chars))


def _random_part() -> str:
    return "".join(secrets.choice(ENCODING) for _ in range(RANDOM_LEN))


def generate(prefix: Optional[str] = None, *, at_ms: Optional[int] = None) -> str:
    """Generate a new id, optionally tagged with *prefix* (``mem_...``).

    Args:
        prefix: Type tag. Must not contain the ``_`` separator.
        at_ms: Timestamp to encode instead of the current time.
    """
    body = encode_time(now_ms() if at_ms is None else at_ms) + _random_part()
    if not prefix:
        return body
    if SEPARATOR in prefix:
        raise ValueError(f"id prefix must not contain {SEPARATOR!r}: {prefix!r}")
    return f"{prefix}{SEPARATOR}{body}"


def strip_prefix(entity_id: str) -> str:
    """Return the encoded part of an id (text after the last separator)."""
    return entity_id.rsplit(SEPARATOR, 1)[-1]


def prefix_of(entity_id: str) -> Optional[str]:
    """Return the type tag of an id, or None for a bare id."""
    if SEPARATOR not in entity_id:
        return None
    return entity_id.rsplit(SEPARATOR, 1)[0]


def timestamp_of(entity_id: str) -> int:
    """Decode the millisecond timestamp embedded in an id.

    Raises:
        InvalidIdentifier: Id too short or containing characters outside
            the Crockford alphabet.
    """
    if not isinstance(entity_id, str):
        raise InvalidIdentifier(f"id must be a string, got {type(entity_id).__name__}")
    body = strip_prefix(entity_id)
    if len(body) < TIME_LEN:
        raise InvalidIdentifier(f"id too short: {entity_id!r}")
    ms = 0
    for ch in body[:TIME_LEN].upper():
        value = _DECODE.get(ch)
        if value is None:
            raise InvalidIdentifier(f"invalid character {ch!r} in id {entity_id!r}")
        ms = ms * ENCODING_LEN + value
    return ms


def is_valid_id(entity_id: str) -> bool:
    """True if *entity_id* has a full-length, decodable body."""
    body = strip_prefix(entity_id) if isinstance(entity_id, str) else ""
    if len(body) != ID_LEN:
        return False
    return all(ch in _DECODE for ch in body.upper())
