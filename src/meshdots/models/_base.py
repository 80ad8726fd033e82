"""Base model and enum for meshdots records.

Every stored record model inherits from :class:`MeshBaseModel`, which
accepts either the stored camelCase keys or the Python field names and
reads older hash layouts through the class-level ``_KEY_ALIASES`` table.

Wire enums inherit from :class:`MeshEnum` whose :meth:`MeshEnum.label`
returns ``TypeN`` for values without a mapped member instead of raising.
"""

from __future__ import annotations

import enum
import math
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict

# Placeholder strings found in older records.
_SENTINELS = frozenset({"", "null", "undefined", "NaN", "nan"})


class MeshEnum(enum.IntEnum):
    """Base for wire-level enums decoded from MeshCore bit fields."""

    @classmethod
    def label(cls, value: int) -> str:
        """Member name for *value*, or ``TypeN`` when no member is mapped."""
        try:
            return cls(value).name
        except ValueError:
            return f"Type{value}"


def _is_placeholder(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() in _SENTINELS
    return isinstance(value, float) and math.isnan(value)


def _rename_legacy_keys(values: dict[str, Any], aliases: dict[str, str]) -> dict[str, Any]:
    """Move legacy keys onto their current names; a usable current value wins."""
    renamed = {key: value for key, value in values.items() if key not in aliases}
    for legacy_key, current_key in aliases.items():
        if legacy_key in values and _is_placeholder(renamed.get(current_key)):
            renamed[current_key] = values[legacy_key]
    return renamed


class MeshBaseModel(BaseModel):
    """Base for records read back from the key-value store.

    Legacy keys listed in ``_KEY_ALIASES`` are renamed once at the read
    boundary, and placeholder values (``""``, ``"null"``, NaN) are dropped
    so the field default is used instead.
    """

    _KEY_ALIASES: ClassVar[dict[str, str]] = {}
    """``{"legacy key": "current key"}`` pairs applied before validation."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    @classmethod
    def from_store(cls, values: dict[str, Any]) -> Any:
        """Build a record from raw stored fields."""
        renamed = _rename_legacy_keys(values, cls._KEY_ALIASES)
        return cls.model_validate({key: value for key, value in renamed.items() if not _is_placeholder(value)})
