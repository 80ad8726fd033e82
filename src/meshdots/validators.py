"""Sanity checks for names, raw packets and decoded metrics.

Validation rejections are not errors: callers treat a rejected value as an
absent field.
"""

from __future__ import annotations

import re
from typing import Any

from meshdots._cache import BoundedMemo

MAX_NAME_LENGTH = 50
NAME_MEMO_SIZE = 1000

MIN_PACKET_SIZE = 10
MAX_PACKET_SIZE = 65536

# Characters carrying the Unicode Emoji property, as used in node names.
_EMOJI = (
    "#*"
    "©®‼⁉™ℹ↔-↙↩↪⌚⌛⌨⏏"
    "⏩-⏳⏸-⏺Ⓜ▪▫▶◀◻-◾☀-➿"
    "⤴⤵⬅-⬇⬛⬜⭐⭕〰〽㊗㊙"
    "\U0001f000-\U0001faff\u200d\u20e3"
)

_HAS_VISIBLE_CHAR = re.compile(f"[a-zA-Zа-яА-ЯёЁ0-9{_EMOJI}]")
_ALLOWED_NAME = re.compile(
    f"^[a-zA-Zа-яА-ЯёЁÀ-ſ0-9\\s\\-_.()\\[\\]@|/,:{_EMOJI}\ufe0f]+$"
)
_SUSPICIOUS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[{}|`~]{2,}"),
    re.compile(r"[!@#$%^&*()+=]{3,}"),
    re.compile(r"[<>]{2,}"),
    re.compile(r"[\\/]{3,}"),
    re.compile(r"[\[\]]{2,}"),
)


def _check_name(name: str) -> bool:
    trimmed = name.strip()
    if not trimmed or len(trimmed) > MAX_NAME_LENGTH:
        return False
    if not _HAS_VISIBLE_CHAR.search(trimmed):
        return False
    if any(pattern.search(trimmed) for pattern in _SUSPICIOUS_PATTERNS):
        return False
    return _ALLOWED_NAME.match(trimmed) is not None


class NameValidator:
    """Memoized node-name check.

    A name is rejected when it is not a string, is empty after trimming,
    is longer than 50 characters, contains a run of suspicious punctuation,
    has no letter/digit/emoji at all, or contains a character outside the
    allow-list (Latin, Latin-1/Extended-A, Cyrillic, digits, whitespace,
    ``-_.()[]@|/,:`` and emoji).
    """

    def __init__(self, memo: BoundedMemo[str, bool] | None = None) -> None:
        self._memo: BoundedMemo[str, bool] = memo if memo is not None else BoundedMemo(NAME_MEMO_SIZE)

    def is_valid(self, name: Any) -> bool:
        if not isinstance(name, str) or not name:
            return False
        return self._memo.get_or_compute(name, _check_name)

    def clean(self, name: Any) -> str:
        """Return *name* if it is valid, else ``""``."""
        return name if self.is_valid(name) else ""

    def clear(self) -> None:
        self._memo.clear()


def is_valid_packet(buffer: bytes | bytearray | memoryview | None) -> bool:
    """Cheap pre-check that *buffer* looks like a length-delimited protobuf envelope.

    The first byte must be the tag for field 1 with wire type 2, followed by
    a base-128 varint length (at most 32 bits) that fits in the buffer.
    """
    if not buffer:
        return False
    data = bytes(buffer)
    if not MIN_PACKET_SIZE <= len(data) <= MAX_PACKET_SIZE:
        return False

    first = data[0]
    if first & 0x07 != 2 or first >> 3 != 1:
        return False

    pos = 1
    length = 0
    shift = 0
    while pos < len(data) and shift < 32:
        byte = data[pos]
        length |= (byte & 0x7F) << shift
        pos += 1
        if not byte & 0x80:
            break
        shift += 7

    return pos + length <= len(data) and length <= MAX_PACKET_SIZE


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_device_metrics(metrics: Any) -> bool:
    """True when at least one device metric carries a usable value."""
    if not isinstance(metrics, dict) or not metrics:
        return False

    for key in ("batteryLevel", "channelUtilization", "airUtilTx", "uptimeSeconds"):
        value = metrics.get(key)
        if _is_number(value) and value >= 0:
            return True
    voltage = metrics.get("voltage")
    return _is_number(voltage) and voltage == voltage


def is_valid_environment_metrics(metrics: Any) -> bool:
    """True when at least one environment reading is present and non-zero."""
    if not isinstance(metrics, dict) or not metrics:
        return False

    temperature = metrics.get("temperature")
    if temperature is not None and temperature != 0:
        return True
    for key in ("relativeHumidity", "barometricPressure", "gasResistance", "voltage", "current"):
        value = metrics.get(key)
        if _is_number(value) and value > 0:
            return True
    return False


def is_valid_message(event: dict[str, Any]) -> bool:
    """Accept only public text messages that carry some text."""
    data = event.get("data")
    if not isinstance(data, dict):
        return False
    if data.get("portnum") not in ("TEXT_MESSAGE_APP", 1):
        return False
    if not data.get("payload") and not data.get("text"):
        return False
    return event.get("type") != "direct"
