"""MeshCore frame models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from meshdots.models._base import MeshEnum


class RouteType(MeshEnum):
    TRANSPORT_FLOOD = 0
    FLOOD = 1
    DIRECT = 2
    TRANSPORT_DIRECT = 3

    @property
    def has_transport(self) -> bool:
        """Whether frames with this route carry a 4-byte transport token."""
        return self in (RouteType.TRANSPORT_FLOOD, RouteType.TRANSPORT_DIRECT)


class PayloadType(MeshEnum):
    REQ = 0x00
    RESPONSE = 0x01
    TXT_MSG = 0x02
    ACK = 0x03
    ADVERT = 0x04
    GRP_TXT = 0x05
    GRP_DATA = 0x06
    ANON_REQ = 0x07
    PATH = 0x08
    TRACE = 0x09
    MULTIPART = 0x0A
    RAW_CUSTOM = 0x0F


class DeviceRole(MeshEnum):
    """Advertised node role (low nibble of the ADVERT flags byte)."""

    Companion = 0x01
    Repeater = 0x02
    RoomServer = 0x03
    Sensor = 0x04


class DecodeFailure(BaseModel):
    """Malformed or truncated input; decoding produced no result."""

    model_config = ConfigDict(frozen=True)

    reason: str

    def __bool__(self) -> bool:
        return False


class FrameHeader(BaseModel):
    """Decoded first byte of a frame: ``[ver:2][payloadType:4][routeType:2]``."""

    model_config = ConfigDict(frozen=True)

    raw: int
    route_type: RouteType
    payload_type_value: int
    version: int

    @classmethod
    def from_byte(cls, value: int) -> FrameHeader:
        return cls(
            raw=value,
            route_type=RouteType(value & 0x03),
            payload_type_value=(value >> 2) & 0x0F,
            version=(value >> 6) & 0x03,
        )

    @property
    def payload_type(self) -> str:
        """Payload type name, ``TypeN`` for unmapped values."""
        return PayloadType.label(self.payload_type_value)

    @property
    def is_advert(self) -> bool:
        return self.payload_type_value == PayloadType.ADVERT


class RawFrame(BaseModel):
    """One MeshCore frame split into its sections.

    ``1 + len(transport or b"") + 1 + len(path) + len(payload)`` always
    equals ``total_length``.
    """

    model_config = ConfigDict(frozen=True)

    header: FrameHeader
    transport: bytes | None = None
    path: bytes = b""
    payload: bytes = b""
    total_length: int

    @field_serializer("transport", "path", "payload")
    def _bytes_as_hex(self, value: bytes | None) -> str | None:
        return None if value is None else value.hex().upper()

    @property
    def hops(self) -> list[int]:
        """Path as a list of one-byte hop hashes."""
        return list(self.path)


class AdvertFlags(BaseModel):
    """Application-data flags byte of an ADVERT payload."""

    model_config = ConfigDict(frozen=True)

    device_type: int
    has_location: bool
    has_feature_1: bool
    has_feature_2: bool
    has_name: bool

    @classmethod
    def from_byte(cls, value: int) -> AdvertFlags:
        return cls(
            device_type=value & 0x0F,
            has_location=bool(value & 0x10),
            has_feature_1=bool(value & 0x20),
            has_feature_2=bool(value & 0x40),
            has_name=bool(value & 0x80),
        )


class AdvertPayload(BaseModel):
    """Decoded ADVERT payload.

    ``truncated_section`` names the first optional section whose flag was set
    but did not fit in the remaining bytes. Fields after it keep their
    defaults.
    """

    model_config = ConfigDict(frozen=True)

    public_key: bytes
    advert_time: int
    signature: bytes
    flags: AdvertFlags
    latitude: float = 0.0
    longitude: float = 0.0
    feature_1: int | None = None
    feature_2: int | None = None
    name: str = ""
    truncated_section: str | None = Field(default=None)

    @field_serializer("public_key", "signature")
    def _bytes_as_hex(self, value: bytes) -> str:
        return value.hex().upper()

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex().upper()

    @property
    def device_type(self) -> str:
        """Role name, ``TypeN`` for unmapped values."""
        return DeviceRole.label(self.flags.device_type)

    @property
    def is_partial(self) -> bool:
        return self.truncated_section is not None

    @property
    def has_location(self) -> bool:
        return self.flags.has_location and self.truncated_section != "location"


class AdvertFrame(BaseModel):
    """A frame whose payload decoded as an ADVERT."""

    model_config = ConfigDict(frozen=True)

    frame: RawFrame
    advert: AdvertPayload
