"""MeshCore binary frame decoder.

Frame layout::

    byte0           [ver:2][payloadType:4][routeType:2]  (routeType in the low bits)
    4 bytes         transport token, present for TRANSPORT_FLOOD / TRANSPORT_DIRECT
    1 byte          pathLen
    pathLen bytes   path (one byte per hop)
    rest            payload

ADVERT payload layout::

    pubKey[32] | timestamp u32le | signature[64] | flags | location? | feat1? | feat2? | name?

The public functions never raise: malformed input yields a
:class:`~meshdots.models.frame.DecodeFailure`.
"""

from __future__ import annotations

import logging
import math
import struct

from meshdots.exceptions import FrameDecodeError
from meshdots.models.frame import (
    AdvertFlags,
    AdvertFrame,
    AdvertPayload,
    DecodeFailure,
    FrameHeader,
    RawFrame,
)

_logger = logging.getLogger(__name__)

_TRANSPORT_LEN = 4
_PUBKEY_LEN = 32
_TIMESTAMP_LEN = 4
_SIGNATURE_LEN = 64
_ADVERT_FIXED_LEN = _PUBKEY_LEN + _TIMESTAMP_LEN + _SIGNATURE_LEN
_ADVERT_MIN_LEN = _ADVERT_FIXED_LEN + 1

_LOCATION = struct.Struct("<ii")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")

_MICRO_DEGREES = 1_000_000.0


class _Reader:
    """Bounds-checked cursor over a byte buffer."""

    __slots__ = ("_data", "offset")

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self.offset = offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self.offset

    def take(self, size: int, what: str) -> bytes:
        if size > self.remaining:
            raise FrameDecodeError(f"{what}: need {size} bytes, {self.remaining} left at offset {self.offset}")
        chunk = self._data[self.offset : self.offset + size]
        self.offset += size
        return chunk

    def byte(self, what: str) -> int:
        return self.take(1, what)[0]

    def unpack(self, fmt: struct.Struct, what: str) -> tuple[int, ...]:
        return fmt.unpack(self.take(fmt.size, what))

    def rest(self) -> bytes:
        chunk = self._data[self.offset :]
        self.offset = len(self._data)
        return chunk


def round_half_away(value: float, places: int) -> float:
    """Round *value* to *places* decimals, halves away from zero."""
    factor = 10**places
    scaled = abs(value) * factor
    rounded = math.floor(scaled + 0.5) / factor
    return math.copysign(rounded, value) if value else 0.0


def _coerce_bytes(data: object) -> bytes:
    if isinstance(data, str):
        try:
            return bytes.fromhex(data.strip())
        except ValueError as exc:
            raise FrameDecodeError(f"invalid hex input: {exc}") from exc
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    raise FrameDecodeError(f"unsupported input type {type(data).__name__}")


def _decode_frame(data: bytes) -> RawFrame:
    if len(data) < 2:
        raise FrameDecodeError(f"frame too short: {len(data)} bytes")

    reader = _Reader(data)
    header = FrameHeader.from_byte(reader.byte("header"))

    transport: bytes | None = None
    if header.route_type.has_transport:
        transport = reader.take(_TRANSPORT_LEN, "transport")

    path_len = reader.byte("path length")
    path = reader.take(path_len, "path")

    return RawFrame(
        header=header,
        transport=transport,
        path=path,
        payload=reader.rest(),
        total_length=len(data),
    )


def decode_frame(data: bytes | bytearray | memoryview | str) -> RawFrame | DecodeFailure:
    """Split a raw frame (bytes or hex string) into header, transport, path and payload."""
    try:
        return _decode_frame(_coerce_bytes(data))
    except FrameDecodeError as exc:
        _logger.debug("MeshCore frame rejected: %s", exc)
        return DecodeFailure(reason=str(exc))


def decode_advert(payload: bytes) -> AdvertPayload | DecodeFailure:
    """Decode an ADVERT payload.

    The fixed prefix must be complete. Optional sections are decoded in flag
    order; the first one that does not fit ends decoding and is recorded in
    ``truncated_section``.
    """
    if len(payload) < _ADVERT_MIN_LEN:
        reason = f"advert too short: {len(payload)} bytes"
        if len(payload) == _ADVERT_FIXED_LEN:
            reason = "advert carries no app data"
        _logger.debug("MeshCore advert rejected: %s", reason)
        return DecodeFailure(reason=reason)

    reader = _Reader(payload)
    public_key = reader.take(_PUBKEY_LEN, "public key")
    (advert_time,) = reader.unpack(_U32, "timestamp")
    signature = reader.take(_SIGNATURE_LEN, "signature")
    flags = AdvertFlags.from_byte(reader.byte("flags"))

    fields: dict[str, object] = {
        "public_key": public_key,
        "advert_time": advert_time,
        "signature": signature,
        "flags": flags,
    }

    section = ""
    try:
        if flags.has_location:
            section = "location"
            lat_i, lon_i = reader.unpack(_LOCATION, section)
            fields["latitude"] = round_half_away(lat_i / _MICRO_DEGREES, 6)
            fields["longitude"] = round_half_away(lon_i / _MICRO_DEGREES, 6)
        if flags.has_feature_1:
            section = "feature_1"
            (fields["feature_1"],) = reader.unpack(_U16, section)
        if flags.has_feature_2:
            section = "feature_2"
            (fields["feature_2"],) = reader.unpack(_U16, section)
    except FrameDecodeError as exc:
        _logger.debug("MeshCore advert partially decoded: %s", exc)
        fields["truncated_section"] = section
        return AdvertPayload.model_validate(fields)

    if flags.has_name:
        name = reader.rest().rstrip(b"\x00").decode("utf-8", errors="replace")
        if name:
            fields["name"] = name

    return AdvertPayload.model_validate(fields)


def decode_advert_frame(data: bytes | bytearray | memoryview | str) -> AdvertFrame | None:
    """Decode a full frame and its ADVERT payload.

    Returns ``None`` for malformed frames and for frames of any other
    payload type.
    """
    frame = decode_frame(data)
    if isinstance(frame, DecodeFailure):
        return None
    if not frame.header.is_advert:
        _logger.debug("Not an ADVERT frame: %s", frame.header.payload_type)
        return None

    advert = decode_advert(frame.payload)
    if isinstance(advert, DecodeFailure):
        return None
    return AdvertFrame(frame=frame, advert=advert)
