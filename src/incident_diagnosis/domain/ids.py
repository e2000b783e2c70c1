"""Identifier generation for diagnosis sessions and ad hoc records."""

from __future__ import annotations

import itertools
import secrets
import threading
import time
from collections.abc import Callable
from typing import Final, Protocol, runtime_checkable

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_ULID_MAX_VALUE: Final[int] = (1 << 128) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

SESSION_ID_PREFIX: Final[str] = "diag"
ISSUE_ID_PREFIX: Final[str] = "issue"
PROJECT_ID_PREFIX: Final[str] = "proj"
EVENT_ID_PREFIX: Final[str] = "evt"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]
_Clock = Callable[[], int]


@runtime_checkable
class IdGenerator(Protocol):
    """Produces unique identifiers for a given entity prefix."""

    def new_id(self, prefix: str) -> str: ...


class UlidIdGenerator:
    """Default generator: ``<prefix>-<ULID>`` with an injectable clock and entropy."""

    def __init__(
        self,
        *,
        clock_ms: _Clock | None = None,
        randbytes: _RandBytes | None = None,
    ) -> None:
        self._clock_ms = clock_ms
        self._randbytes = randbytes

    def new_id(self, prefix: str) -> str:
        timestamp_ms = self._clock_ms() if self._clock_ms is not None else None
        return generate_prefixed_id(prefix, timestamp_ms=timestamp_ms, randbytes=self._randbytes)


class SequentialIdGenerator:
    """Monotonic counter generator for deterministic tests: ``<prefix>-000001``."""

    def __init__(self, *, start: int = 1, width: int = 6) -> None:
        if start < 0:
            raise ValueError("start must be >= 0")
        if width <= 0:
            raise ValueError("width must be > 0")
        self._counter = itertools.count(start)
        self._width = width
        self._lock = threading.Lock()

    def new_id(self, prefix: str) -> str:
        _validate_prefix(prefix)
        with self._lock:
            value = next(self._counter)
        return f"{prefix}{_PREFIX_SEPARATOR}{value:0{self._width}d}"


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = _resolve_timestamp_ms(timestamp_ms)
    random_bytes = _resolve_random_bytes(randbytes)
    ulid_value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")
    return _encode_crockford_base32(ulid_value, ULID_LENGTH)


def validate_ulid(s: str) -> None:
    """Validate a ULID and raise ``ValueError`` with precise context on failure."""
    if not isinstance(s, str):
        raise ValueError(f"ulid must be a string, got {type(s).__name__}")
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid must be {ULID_LENGTH} characters, got {len(s)}")
    value = 0
    for index, char in enumerate(s):
        digit = _DECODE_TABLE.get(char)
        if digit is None:
            raise ValueError(f"ulid has invalid character {char!r} at index {index}")
        value = (value << 5) | digit
    if value > _ULID_MAX_VALUE:
        raise ValueError("ulid value exceeds 128 bits")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a stable prefixed ID in the form ``<prefix>-<ulid>``."""
    _validate_prefix(prefix)
    return f"{prefix}{_PREFIX_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Validate ``<prefix>-<ulid>`` format and enforce ``expected_prefix``."""
    _validate_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")

    expected_lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(expected_lead):
        raise ValueError(f"expected prefix '{expected_lead}'")

    ulid_part = id_str[len(expected_lead) :]
    try:
        validate_ulid(ulid_part)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_session_id(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return generate_prefixed_id(SESSION_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_event_id(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def _resolve_timestamp_ms(timestamp_ms: int | None) -> int:
    if timestamp_ms is None:
        return time.time_ns() // 1_000_000
    if isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, int):
        raise ValueError(f"timestamp_ms must be an integer, got {type(timestamp_ms).__name__}")
    if not 0 <= timestamp_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")
    return timestamp_ms


def _resolve_random_bytes(randbytes: _RandBytes | None) -> bytes:
    source = randbytes if randbytes is not None else secrets.token_bytes
    value = source(ULID_RANDOM_BYTES)
    if not isinstance(value, (bytes, bytearray)) or len(value) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    return bytes(value)


def _encode_crockford_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def _validate_prefix(prefix: str) -> None:
    if not isinstance(prefix, str):
        raise ValueError(f"prefix must be a string, got {type(prefix).__name__}")
    if not prefix or not prefix.isalnum() or not prefix.islower():
        raise ValueError(f"prefix must be lowercase alphanumeric, got {prefix!r}")


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "ISSUE_ID_PREFIX",
    "IdGenerator",
    "PROJECT_ID_PREFIX",
    "SESSION_ID_PREFIX",
    "SequentialIdGenerator",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "UlidIdGenerator",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_session_id",
    "generate_ulid",
    "validate_prefixed_id",
    "validate_ulid",
]
