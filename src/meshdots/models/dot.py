"""Aggregated per-device records ("dots")."""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meshdots.ingestion.normalize import format_store_float, safe_float, safe_int
from meshdots.models._base import MeshBaseModel

# Legacy field names accepted when reading ``dots:*`` hashes.
DOT_FIELD_ALIASES: dict[str, str] = {
    "Long Name": "longName",
    "Short Name": "shortName",
    "long_name": "longName",
    "short_name": "shortName",
    "lon": "longitude",
    "lng": "longitude",
    "lat": "latitude",
    "lastUpdateTime": "s_time",
}


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


class DeviceDot(MeshBaseModel):
    """Canonical aggregated state of one Meshtastic node.

    Parameters
    ----------
    long_name, short_name : str
        Validated node names, empty when unknown.
    longitude, latitude : float
        Last known position in degrees, ``0`` when unknown.
    mqtt : str
        ``"1"`` when the node relayed its own packet as a gateway, ``"0"``
        when it was relayed by another gateway, ``""`` when unknown.
    last_update_time : int
        Server-assigned epoch milliseconds of the last write.
    """

    _KEY_ALIASES: ClassVar[dict[str, str]] = DOT_FIELD_ALIASES

    long_name: str = Field(default="", alias="longName")
    short_name: str = Field(default="", alias="shortName")
    longitude: float = 0.0
    latitude: float = 0.0
    mqtt: str = ""
    last_update_time: int = Field(default=0, alias="s_time")

    @field_validator("long_name", "short_name", mode="before")
    @classmethod
    def _coerce_names(cls, value: Any) -> str:
        return _coerce_text(value)

    @field_validator("longitude", "latitude", mode="before")
    @classmethod
    def _coerce_coordinates(cls, value: Any) -> float:
        parsed = safe_float(value)
        return 0.0 if parsed is None else parsed

    @field_validator("mqtt", mode="before")
    @classmethod
    def _coerce_gateway_flag(cls, value: Any) -> str:
        text = _coerce_text(value).strip().lower()
        if text in {"1", "true"}:
            return "1"
        if text in {"0", "false"}:
            return "0"
        return ""

    @field_validator("last_update_time", mode="before")
    @classmethod
    def _coerce_time(cls, value: Any) -> int:
        parsed = safe_int(value)
        return 0 if parsed is None else parsed

    @property
    def has_location(self) -> bool:
        return self.longitude != 0 or self.latitude != 0

    def to_store(self) -> dict[str, str]:
        """Hash fields written to ``dots:<id>``."""
        return {
            "longName": self.long_name,
            "shortName": self.short_name,
            "longitude": format_store_float(self.longitude),
            "latitude": format_store_float(self.latitude),
            "mqtt": self.mqtt,
            "s_time": str(self.last_update_time),
        }

    def to_api(self) -> dict[str, Any]:
        """JSON shape served by the query facade."""
        return self.model_dump(by_alias=True)


class MapPoint(BaseModel):
    """Minimal map entry: position and freshness only."""

    model_config = ConfigDict(frozen=True)

    lon: float
    lat: float
    t: int = 0

    @classmethod
    def from_dot(cls, dot: DeviceDot) -> MapPoint:
        return cls(lon=dot.longitude, lat=dot.latitude, t=dot.last_update_time)


class MeshcoreDot(MeshBaseModel):
    """Aggregated state of one MeshCore node, keyed by public key."""

    _KEY_ALIASES: ClassVar[dict[str, str]] = {
        "latitude": "lat",
        "longitude": "lon",
        "deviceId": "device_id",
    }

    public_key: str = ""
    device_id: str = ""
    name: str = ""
    lat: float | None = None
    lon: float | None = None
    gateway_origin: str = ""
    gateway_origin_id: str = ""
    s_time: int = 0

    @field_validator("device_id", "name", "gateway_origin", "gateway_origin_id", mode="before")
    @classmethod
    def _coerce_texts(cls, value: Any) -> str:
        return _coerce_text(value)

    @field_validator("lat", "lon", mode="before")
    @classmethod
    def _coerce_coordinates(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("s_time", mode="before")
    @classmethod
    def _coerce_time(cls, value: Any) -> int:
        parsed = safe_int(value)
        return 0 if parsed is None else parsed

    @property
    def has_location(self) -> bool:
        return bool(self.lat) and bool(self.lon)

    def to_store(self) -> dict[str, str]:
        """Hash fields written to ``dots_meshcore:<public key>``."""
        return {
            "device_id": self.device_id,
            "lat": "" if self.lat is None else format_store_float(self.lat),
            "lon": "" if self.lon is None else format_store_float(self.lon),
            "name": self.name,
            "gateway_origin": self.gateway_origin,
            "gateway_origin_id": self.gateway_origin_id,
            "s_time": str(self.s_time),
        }
