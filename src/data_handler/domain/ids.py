"""Store and record identifiers: ``<prefix>-<ULID>`` strings and the ``RecordID`` value type."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

from data_handler.constants import RECORD_ID_PREFIX

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

STORE_ID_PREFIX: Final[str] = "store"
RECORD_URI_SCHEME: Final[str] = "x-record"

_RANDOM_BYTES: Final[int] = 10
# 26 base32 digits carry 130 bits; a leading digit above 7 overflows 128.
_MAX_LEADING_DIGIT: Final[int] = 7


@dataclass(frozen=True, slots=True)
class RecordID:
    """Opaque, store-scoped reference to exactly one record.

    Identifiers compare for equality and hash, but define no ordering.
    """

    store_id: str
    entity: str
    key: str

    def __post_init__(self) -> None:
        validate_prefixed_id(self.store_id, STORE_ID_PREFIX)
        validate_entity_name(self.entity)
        validate_record_key(self.key)

    def to_uri(self) -> str:
        return f"{RECORD_URI_SCHEME}://{self.store_id}/{self.entity}/{self.key}"

    @classmethod
    def from_uri(cls, uri: str) -> RecordID:
        if not isinstance(uri, str):
            raise ValueError(f"record uri must be a string, got {type(uri).__name__}")
        scheme, sep, rest = uri.strip().partition("://")
        parts = rest.split("/")
        if scheme != RECORD_URI_SCHEME or not sep or len(parts) != 3 or not all(parts):
            raise ValueError(f"record uri must look like {RECORD_URI_SCHEME}://<store>/<entity>/<key>")
        store_id, entity, key = parts
        return cls(store_id=store_id, entity=entity, key=key)

    def __str__(self) -> str:
        return self.to_uri()


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    """Return a 26-character Crockford Base32 ULID: 48-bit time, 80 random bits."""

    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= millis <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {millis}")
    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BYTES)
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (millis << 80) | int.from_bytes(entropy, "big")
    return "".join(
        CROCKFORD_BASE32_ALPHABET[(value >> shift) & 0x1F] for shift in range(125, -1, -5)
    )


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a ULID (case-insensitive)."""

    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    upper = value.upper()
    for index, char in enumerate(upper):
        if char not in CROCKFORD_BASE32_ALPHABET:
            raise ValueError(f"invalid ULID character {value[index]!r} at index {index}")
    if CROCKFORD_BASE32_ALPHABET.index(upper[0]) > _MAX_LEADING_DIGIT:
        raise ValueError("ulid overflow: value exceeds 128 bits")


def generate_prefixed_id(prefix: str, **ulid_options: object) -> str:
    """Return ``<prefix>-<ulid>``; ``ulid_options`` go to ``generate_ulid``."""
    _check_prefix(prefix)
    return f"{prefix}-{generate_ulid(**ulid_options)}"  # type: ignore[arg-type]


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    prefix, _, ulid = id_str.partition("-")
    if prefix != expected_prefix or not ulid:
        raise ValueError(f"expected prefix '{expected_prefix}-' in {id_str!r}")
    try:
        validate_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"{id_str!r}: {exc}") from exc


def generate_store_id(**ulid_options: object) -> str:
    return generate_prefixed_id(STORE_ID_PREFIX, **ulid_options)


def generate_record_key(**ulid_options: object) -> str:
    return generate_prefixed_id(RECORD_ID_PREFIX, **ulid_options)


def validate_record_key(key: str) -> None:
    validate_prefixed_id(key, RECORD_ID_PREFIX)


def validate_entity_name(name: str) -> None:
    if not isinstance(name, str) or not name.isidentifier():
        raise ValueError(f"entity name must be a Python identifier, got {name!r}")


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if "-" in prefix:
        raise ValueError("prefix must not contain '-'")


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "RECORD_URI_SCHEME",
    "RecordID",
    "STORE_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "generate_prefixed_id",
    "generate_record_key",
    "generate_store_id",
    "generate_ulid",
    "validate_entity_name",
    "validate_prefixed_id",
    "validate_record_key",
    "validate_ulid",
]
