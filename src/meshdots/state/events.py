"""Normalized write events.

Ingestion paths (Meshtastic portnum events, MeshCore adverts) convert their
inputs into these events. Only the aggregation engine merges them into the
store.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meshdots.ids import to_numeric_id
from meshdots.models.category import Category, category_name


class DotUpdate(BaseModel):
    """A partial observation of one Meshtastic node."""

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(..., description="Node id, numeric or !hex form")
    category: Category | None = None
    longitude: float | None = None
    latitude: float | None = None
    long_name: str | None = None
    short_name: str | None = None
    gateway_id: str | None = Field(default=None, description="Identity of the relaying gateway")
    origin_id: str | None = Field(default=None, description="Identity the packet originated from")

    @field_validator("device_id")
    @classmethod
    def _normalize_device_id(cls, value: str) -> str:
        numeric = to_numeric_id(value)
        if numeric is None:
            raise ValueError(f"invalid device id: {value!r}")
        return numeric

    @field_validator("category", mode="before")
    @classmethod
    def _resolve_category(cls, value: Any) -> Category | None:
        if value is None:
            return None
        resolved = category_name(value)
        if resolved is None:
            raise ValueError(f"unknown category: {value!r}")
        return resolved

    @property
    def has_coordinates(self) -> bool:
        return self.longitude is not None or self.latitude is not None

    def fields(self) -> dict[str, Any]:
        """Observed dot fields, keyed by their stored names."""
        fields: dict[str, Any] = {}
        if self.has_coordinates:
            fields["longitude"] = self.longitude or 0.0
            fields["latitude"] = self.latitude or 0.0
        if self.long_name is not None:
            fields["longName"] = self.long_name
        if self.short_name is not None:
            fields["shortName"] = self.short_name
        return fields


class MeshcoreUpdate(BaseModel):
    """An ADVERT observation of one MeshCore node."""

    model_config = ConfigDict(frozen=True)

    public_key: str
    device_id: str = ""
    name: str = ""
    lat: float | None = None
    lon: float | None = None
    gateway_origin: str = ""
    gateway_origin_id: str = ""

    @field_validator("public_key")
    @classmethod
    def _normalize_public_key(cls, value: str) -> str:
        key = value.strip().upper()
        if not key:
            raise ValueError("public_key must be non-empty")
        return key
