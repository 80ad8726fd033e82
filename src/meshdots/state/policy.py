"""Deterministic merge and retention decisions.

Pure functions only: the engine reads the store, asks these functions what
to do, then writes.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from meshdots._constants import DUPLICATE_IGNORED_FIELDS
from meshdots.ids import same_node
from meshdots.ingestion.normalize import safe_float, safe_int
from meshdots.models.dot import DeviceDot
from meshdots.validators import NameValidator


def is_debounced(previous_s_time: int | None, now_ms: int, debounce_ms: int) -> bool:
    """True while *now_ms* is still inside the window opened by the last write."""
    if previous_s_time is None or previous_s_time <= 0:
        return False
    return 0 <= now_ms - previous_s_time < debounce_ms


def has_observable_change(existing: DeviceDot, fields: Mapping[str, Any]) -> bool:
    """Whether *fields* would change the coordinates or names of *existing*.

    Names in *fields* are expected to be validated already.
    """
    if "longitude" in fields or "latitude" in fields:
        if (safe_float(fields.get("longitude")) or 0.0) != existing.longitude:
            return True
        if (safe_float(fields.get("latitude")) or 0.0) != existing.latitude:
            return True
    if "longName" in fields and fields["longName"] != existing.long_name:
        return True
    return "shortName" in fields and fields["shortName"] != existing.short_name


def gateway_flag(gateway_id: str | None, origin_id: str | None) -> str | None:
    """``"1"`` when the origin relayed its own packet, ``"0"`` otherwise.

    ``None`` when either identity is unknown: the stored flag is kept.
    """
    if not gateway_id or not origin_id:
        return None
    return "1" if same_node(gateway_id, origin_id) else "0"


def should_persist(dot: DeviceDot, validator: NameValidator) -> bool:
    """A dot is kept iff it has a location or at least one valid name."""
    if dot.has_location:
        return True
    return validator.is_valid(dot.long_name) or validator.is_valid(dot.short_name)


def is_duplicate_record(
    previous: Mapping[str, Any],
    incoming: Mapping[str, Any],
    *,
    now_ms: int,
    window_ms: int,
) -> bool:
    """Compare a stored message record with an incoming one.

    Duplicate when the stored record is at most ``window_ms`` old (strictly
    less) and both records match on every field except the volatile ones.
    """
    stored_at = safe_int(previous.get("timestamp"))
    if stored_at is None:
        return False
    delta = now_ms - stored_at
    if not 0 <= delta < window_ms:
        return False

    def significant(record: Mapping[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in record.items() if k not in DUPLICATE_IGNORED_FIELDS}

    return significant(previous) == significant(incoming)
