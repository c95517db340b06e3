"""
Tagged value codec for the document REST API.

The REST surface has no native JSON typing: every value travels wrapped in
a single-key object whose key names its type, e.g. {"integerValue": "42"}.

Invariants:
- Closed tag set (ValueTag); every native kind maps to exactly one tag.
- bool is checked before int (bool is an int subclass in Python).
- Integers travel as decimal strings.
- Mapping entries whose value is UNSET are omitted, never sent.
- Decoding never raises on unknown shapes; they pass through unchanged.

Lossy cases: datetimes decode to their ISO-8601 string, tuples decode to
lists. Everything else round-trips exactly.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping

from .types import format_timestamp


TaggedValue = Dict[str, Any]


class _Unset:
    """Sentinel for "no value at all" (as opposed to None, which is null)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


class ValueTag(str, Enum):
    NULL = "nullValue"
    BOOLEAN = "booleanValue"
    INTEGER = "integerValue"
    DOUBLE = "doubleValue"
    STRING = "stringValue"
    TIMESTAMP = "timestampValue"
    ARRAY = "arrayValue"
    MAP = "mapValue"


# ------------------------------------------------------------
# Encoding
# ------------------------------------------------------------

def to_tagged_value(value: Any) -> TaggedValue:
    """Convert a native value into its tagged wire form."""
    if value is None or value is UNSET:
        return {ValueTag.NULL.value: None}

    if isinstance(value, Enum):
        return to_tagged_value(value.value)

    if isinstance(value, bool):
        return {ValueTag.BOOLEAN.value: value}

    if isinstance(value, int):
        if INT64_MIN <= value <= INT64_MAX:
            return {ValueTag.INTEGER.value: str(value)}
        # Outside the backend's 64-bit integer range
        return {ValueTag.STRING.value: str(value)}

    if isinstance(value, float):
        return {ValueTag.DOUBLE.value: value}

    if isinstance(value, str):
        return {ValueTag.STRING.value: value}

    if isinstance(value, datetime):
        return {ValueTag.TIMESTAMP.value: format_timestamp(value)}

    if isinstance(value, (list, tuple)):
        return {ValueTag.ARRAY.value: {"values": [to_tagged_value(v) for v in value]}}

    if isinstance(value, Mapping):
        return {ValueTag.MAP.value: {"fields": encode_fields(value)}}

    # Fallback: anything else (Decimal, UUID, ...) travels as its string form
    return {ValueTag.STRING.value: str(value)}


def encode_fields(values: Mapping[str, Any]) -> Dict[str, TaggedValue]:
    """Encode a document body, skipping UNSET entries."""
    return {
        str(k): to_tagged_value(v)
        for k, v in values.items()
        if v is not UNSET
    }


# ------------------------------------------------------------
# Decoding
# ------------------------------------------------------------

def from_tagged_value(tagged: Any) -> Any:
    """Inverse of to_tagged_value. Unknown shapes are returned unchanged."""
    if not isinstance(tagged, dict):
        return tagged

    if ValueTag.NULL.value in tagged:
        return None

    if ValueTag.BOOLEAN.value in tagged:
        return bool(tagged[ValueTag.BOOLEAN.value])

    if ValueTag.INTEGER.value in tagged:
        return int(tagged[ValueTag.INTEGER.value])

    if ValueTag.DOUBLE.value in tagged:
        return float(tagged[ValueTag.DOUBLE.value])

    if ValueTag.STRING.value in tagged:
        return tagged[ValueTag.STRING.value]

    if ValueTag.TIMESTAMP.value in tagged:
        return tagged[ValueTag.TIMESTAMP.value]

    if ValueTag.MAP.value in tagged:
        inner = tagged[ValueTag.MAP.value] or {}
        return decode_fields(inner.get("fields") or {})

    if ValueTag.ARRAY.value in tagged:
        inner = tagged[ValueTag.ARRAY.value] or {}
        return [from_tagged_value(v) for v in inner.get("values") or []]

    return tagged


def decode_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: from_tagged_value(v) for k, v in fields.items()}


__all__ = [
    "TaggedValue",
    "ValueTag",
    "UNSET",
    "to_tagged_value",
    "from_tagged_value",
    "encode_fields",
    "decode_fields",
]
