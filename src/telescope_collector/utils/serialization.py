"""JSON helpers that accept every payload shape the collector records."""

from __future__ import annotations

import base64
import dataclasses
import json
from collections.abc import Mapping
from datetime import datetime
from typing import Any


def to_jsonable(value: Any) -> Any:
    """Convert entries and payload values into plain JSON types.

    ``bytes`` become base64 text (the OTLP encoding), datetimes become ISO-8601 strings and dataclasses become
    dictionaries. Unknown objects fall back to ``str`` so serialization never fails on a recorded payload.
    """

    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: to_jsonable(getattr(value, field.name)) for field in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in value]
    return str(value)


def dumps(value: Any) -> str:
    """Serialize to compact JSON."""

    return json.dumps(to_jsonable(value), separators=(",", ":"), ensure_ascii=False)


def loads_lenient(value: Any) -> Any:
    """Return ``value`` decoded from JSON when it arrives as text.

    Some database drivers hand JSON columns back already decoded while others return the raw string; both are
    normalized to the same in-memory shape. Only text shaped like a JSON object or array is decoded, so this is meant
    for columns that always hold an object or an array. Bodies, which may be any value, go through
    :func:`decode_payload` instead.
    """

    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str) and value.lstrip()[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def encode_payload(value: Any) -> dict[str, Any] | None:
    """Wrap a request or response body in a tagged envelope for a JSON column.

    A JSON column cannot tell the text ``'{"a": 1}'`` from the object it spells, and it has no bytes type. The envelope
    records which one was stored: ``{"type": "text" | "bytes" | "json", "value": ...}``.
    """

    if value is None:
        return None
    if isinstance(value, str):
        return {"type": "text", "value": value}
    if isinstance(value, (bytes, bytearray)):
        return {"type": "bytes", "value": base64.b64encode(bytes(value)).decode("ascii")}
    return {"type": "json", "value": to_jsonable(value)}


def decode_payload(value: Any) -> Any:
    """Inverse of :func:`encode_payload`. Values written without an envelope are returned as they were read."""

    value = loads_lenient(value)
    if not isinstance(value, Mapping) or set(value) != {"type", "value"}:
        return value
    kind, inner = value["type"], value["value"]
    if kind == "bytes":
        return base64.b64decode(inner)
    if kind in ("text", "json"):
        return inner
    return value


__all__ = ["to_jsonable", "dumps", "loads_lenient", "encode_payload", "decode_payload"]
