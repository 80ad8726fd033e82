"""Device identifier helpers.

Mesh nodes are addressed either as ``!`` followed by eight hex digits
(``!015ba416``) or as the equivalent unsigned 32-bit decimal
(``22782998``). Store keys always use the decimal form.
"""

from __future__ import annotations

from typing import Any

_MAX_NODE_NUM = 0xFFFFFFFF
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _node_num(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        num = value
    elif isinstance(value, str):
        text = value.strip()
        if text.startswith("!"):
            digits = text[1:]
            if not digits or len(digits) > 8 or not set(digits) <= _HEX_DIGITS:
                return None
            num = int(digits, 16)
        elif text.isdigit():
            num = int(text)
        else:
            return None
    else:
        return None
    if not 0 <= num <= _MAX_NODE_NUM:
        return None
    return num


def to_numeric_id(value: Any) -> str | None:
    """Return the decimal form of a device id, or ``None`` if it is not one."""
    num = _node_num(value)
    return None if num is None else str(num)


def to_hex_id(value: Any) -> str | None:
    """Return the ``!xxxxxxxx`` form of a device id, or ``None``."""
    num = _node_num(value)
    return None if num is None else f"!{num:08x}"


def same_node(left: Any, right: Any) -> bool:
    """Whether two identifiers (in either form) address the same node."""
    left_num = _node_num(left)
    right_num = _node_num(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return str(left) == str(right)
