"""
Serialization utilities for the KWH event indexer.

JSON encoding for Decimal, HexBytes, datetimes, large integers and web3 types,
plus the hex/int coercion helpers used when turning raw JSON-RPC payloads
(either HexBytes from web3.py or plain hex strings from a websocket) into
indexer types.

Usage:
    from shared.serialization_utils import RecordEncoder, dumps, to_hex, to_int
    json.dumps(data, cls=RecordEncoder)
"""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from json import JSONEncoder
from typing import Any

from hexbytes import HexBytes

from shared.constants import MAX_SAFE_INTEGER


class RecordEncoder(JSONEncoder):
    """
    JSON encoder for indexed records and raw web3.py responses.

    Sources:
    - RFC 7159 section 6 (JSON number limits)
    - IEEE 754-2008 (double precision safe integer limit: 2^53 - 1)
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (bytes, bytearray)):
            return to_hex(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        # web3.py AttributeDict (blocks, receipts, logs)
        if hasattr(obj, "__iter__") and hasattr(obj, "keys"):
            return dict(obj)
        return super().default(obj)

    def encode(self, obj: Any) -> str:
        """Convert large integers to strings before JSON serialization."""
        return super().encode(self._convert_large_ints(obj))

    def _convert_large_ints(self, obj: Any) -> Any:
        """
        Recursively convert integers exceeding IEEE 754 safe limits to strings.

        Token amounts are uint256 wei values; JavaScript consumers of the
        stored JSON would silently round them otherwise.
        """
        if isinstance(obj, dict):
            return {k: self._convert_large_ints(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._convert_large_ints(item) for item in obj]
        elif isinstance(obj, bool):
            return obj
        elif isinstance(obj, int) and (obj > MAX_SAFE_INTEGER or obj < -MAX_SAFE_INTEGER):
            return str(obj)
        return obj


def dumps(obj: Any, **kwargs: Any) -> str:
    """json.dumps with RecordEncoder."""
    return json.dumps(obj, cls=RecordEncoder, **kwargs)


def to_hex(value: Any) -> str:
    """
    Return a lowercase 0x-prefixed hex string for bytes, HexBytes or hex text.

    HexBytes.hex() dropped the 0x prefix in hexbytes 1.x, so bytes are
    formatted explicitly.
    """
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray, HexBytes)):
        return "0x" + bytes(value).hex()
    text = str(value).strip().lower()
    if not text:
        return ""
    return text if text.startswith("0x") else "0x" + text


def to_int(value: Any) -> int | None:
    """Coerce a JSON-RPC quantity (int or hex/decimal string) to int."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    text = str(value).strip()
    if not text:
        return None
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)


def to_bytes(value: Any) -> bytes:
    """Coerce hex text or bytes-like to raw bytes (empty for None / "0x")."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes(HexBytes(str(value)))
