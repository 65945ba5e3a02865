"""
Binary-safe JSON encoding for persisted session credentials.

Credential material from the protocol library contains raw key bytes.
JSON cannot carry bytes, so they are written as tagged objects::

    {"type": "Buffer", "data": "<base64>"}

which is the same tagging the WhatsApp Web libraries use, so records
written by either side can be read by the other. On decode, a tagged
object whose ``data`` is a list of ints is also accepted.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

BUFFER_TAG = "Buffer"


class CorruptRecord(ValueError):
    """Raised when a stored record cannot be parsed into a credential."""
    pass


def _replace_bytes(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": BUFFER_TAG, "data": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {str(k): _replace_bytes(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_replace_bytes(v) for v in value]
    return value


def _revive_bytes(obj: dict[str, Any]) -> Any:
    if obj.get("type") != BUFFER_TAG or set(obj) != {"type", "data"}:
        return obj
    data = obj["data"]
    if isinstance(data, str):
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CorruptRecord(f"invalid base64 in Buffer: {exc}") from exc
    if isinstance(data, list):
        try:
            return bytes(data)
        except (TypeError, ValueError) as exc:
            raise CorruptRecord(f"invalid byte list in Buffer: {exc}") from exc
    raise CorruptRecord("Buffer data must be a base64 string or a list of ints")


def dumps(payload: Any) -> str:
    """Serialize ``payload`` to JSON, tagging any bytes values."""
    return json.dumps(_replace_bytes(payload), separators=(",", ":"))


def loads(raw: str | bytes) -> Any:
    """
    Parse JSON produced by :func:`dumps`, restoring tagged bytes.

    Raises:
        CorruptRecord: If ``raw`` is not valid JSON or carries a malformed
            Buffer tag.
    """
    try:
        return json.loads(raw, object_hook=_revive_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
        raise CorruptRecord(f"record is not valid JSON: {exc}") from exc
