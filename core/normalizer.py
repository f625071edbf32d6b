"""
Argument normalizer: decoded event arguments -> canonical storable form.

Pure and idempotent. Integers beyond the IEEE 754 safe range become
base-10 strings, bytes become 0x-hex, tuples become lists, and mapping keys
that are decoding artifacts (positional numerals, "length") are dropped.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from shared.constants import ARTIFACT_KEY_LENGTH, MAX_SAFE_INTEGER
from shared.serialization_utils import to_hex


def _is_artifact_key(key: Any) -> bool:
    text = str(key)
    return text == ARTIFACT_KEY_LENGTH or (text.isascii() and text.isdigit())


def normalize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    if isinstance(value, Mapping):
        return {str(k): normalize(v) for k, v in value.items() if not _is_artifact_key(k)}
    if isinstance(value, (list, tuple)):
        return [normalize(item) for item in value]
    return value
