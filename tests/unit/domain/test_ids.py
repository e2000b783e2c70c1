"""
incident-diagnosis: unit tests for identifier generation

File: tests/unit/domain/test_ids.py

Purpose
- Validate ULID encoding, prefixed ids, and the injectable generators.
"""

from __future__ import annotations

import pytest

from incident_diagnosis.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_ulids_are_unique_and_uppercase_crockford() -> None:
    generated = {ids.generate_ulid() for _ in range(2_000)}

    assert len(generated) == 2_000
    sample = next(iter(generated))
    assert len(sample) == ids.ULID_LENGTH
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in sample)


def test_ulid_encoding_is_deterministic_with_injected_sources() -> None:
    assert ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes) == "0" * 26
    earlier = ids.generate_ulid(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_ulid(timestamp_ms=1_001, randbytes=_zero_bytes)
    assert earlier < later


@pytest.mark.parametrize("bad", [-1, ids.ULID_MAX_TIMESTAMP_MS + 1, True, 1.5])
def test_timestamp_validation(bad: object) -> None:
    with pytest.raises(ValueError, match="timestamp_ms"):
        ids.generate_ulid(timestamp_ms=bad)  # type: ignore[arg-type]


def test_randbytes_must_return_exact_length() -> None:
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(randbytes=lambda size: b"\x00" * (size - 1))


@pytest.mark.parametrize(
    ("value", "message"),
    [
        ("0" * 25, "26 characters"),
        ("0" * 25 + "U", "invalid character 'U' at index 25"),
        ("8" + "0" * 25, "exceeds 128 bits"),
    ],
)
def test_validate_ulid_rejects_bad_values(value: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ids.validate_ulid(value)


def test_session_and_event_ids_round_trip_validation() -> None:
    session_id = ids.generate_session_id(timestamp_ms=5, randbytes=_zero_bytes)
    event_id = ids.generate_event_id()

    assert session_id == "diag-" + "0" * 9 + "5" + "0" * 16
    ids.validate_prefixed_id(session_id, ids.SESSION_ID_PREFIX)
    ids.validate_prefixed_id(event_id, ids.EVENT_ID_PREFIX)
    with pytest.raises(ValueError, match="expected prefix 'evt-'"):
        ids.validate_prefixed_id(session_id, ids.EVENT_ID_PREFIX)
    with pytest.raises(ValueError, match="invalid ULID part"):
        ids.validate_prefixed_id("diag-short", ids.SESSION_ID_PREFIX)


@pytest.mark.parametrize("prefix", ["", "Diag", "diag-x", "d_1"])
def test_prefix_must_be_lowercase_alphanumeric(prefix: str) -> None:
    with pytest.raises(ValueError, match="prefix"):
        ids.generate_prefixed_id(prefix)


def test_ulid_generator_uses_injected_clock() -> None:
    generator = ids.UlidIdGenerator(clock_ms=lambda: 5, randbytes=_zero_bytes)

    assert generator.new_id("diag") == "diag-" + "0" * 9 + "5" + "0" * 16
    assert isinstance(generator, ids.IdGenerator)


def test_sequential_generator_counts_across_prefixes() -> None:
    generator = ids.SequentialIdGenerator(start=7, width=3)

    assert [generator.new_id("diag"), generator.new_id("evt")] == ["diag-007", "evt-008"]
    with pytest.raises(ValueError):
        ids.SequentialIdGenerator(start=-1)
    with pytest.raises(ValueError):
        ids.SequentialIdGenerator(width=0)
