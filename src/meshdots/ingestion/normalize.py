"""Coercion of decoded packet fields and stored hash values."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any

_EMPTY: tuple[Any, ...] = (None, "", {}, [])


def safe_float(value: Any) -> float | None:
    """Finite float for numbers and numeric strings, else ``None``.

    Booleans are rejected even though ``float(True)`` succeeds.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def safe_int(value: Any) -> int | None:
    as_float = safe_float(value)
    return None if as_float is None else int(as_float)


def format_store_float(value: float) -> str:
    """Render a float for a hash field; integral values drop the ``.0``."""
    if value == int(value):
        return str(int(value))
    return repr(value)


def first_present(data: dict[str, Any], *keys: str) -> Any:
    """Value of the first key in *keys* that holds a truthy value."""
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def compact(data: Mapping[str, Any]) -> dict[str, Any]:
    """Shallow copy of *data* without ``None``, empty strings or empty containers."""
    return {key: value for key, value in data.items() if value not in _EMPTY}


def load_json_record(raw: Any) -> dict[str, Any] | None:
    """Parse one stored message record; ``None`` for malformed entries."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def dump_json_record(record: dict[str, Any]) -> str:
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str)
