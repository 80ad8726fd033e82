"""MeshCore MQTT envelopes -> MeshCore dots.

Observers publish every received packet as JSON with the raw frame in
``raw`` (hex) and their own identity in ``origin`` / ``origin_id``. Only
ADVERT frames update dots.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from meshdots.meshcore import decode_advert_frame
from meshdots.models.dot import MeshcoreDot
from meshdots.state.events import MeshcoreUpdate

if TYPE_CHECKING:
    from meshdots.state.engine import AggregationEngine

_logger = logging.getLogger(__name__)


def parse_envelope(payload: bytes | str) -> dict[str, Any] | None:
    """Decode an MQTT message body; ``None`` when it is not a JSON object."""
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def build_meshcore_update(envelope: Mapping[str, Any]) -> MeshcoreUpdate | None:
    raw = envelope.get("raw")
    if not isinstance(raw, str) or not raw:
        return None

    result = decode_advert_frame(raw)
    if result is None:
        return None

    advert = result.advert
    lat = lon = None
    if advert.has_location and (advert.latitude or advert.longitude):
        lat, lon = advert.latitude, advert.longitude

    return MeshcoreUpdate(
        public_key=advert.public_key_hex,
        name=advert.name,
        lat=lat,
        lon=lon,
        gateway_origin=str(envelope.get("origin") or ""),
        gateway_origin_id=str(envelope.get("origin_id") or ""),
    )


async def ingest_meshcore_envelope(engine: AggregationEngine, envelope: Mapping[str, Any]) -> MeshcoreDot | None:
    update = build_meshcore_update(envelope)
    if update is None:
        return None
    _logger.debug("ADVERT from %s via %s", update.public_key, update.gateway_origin or "unknown observer")
    return await engine.save_meshcore_dot(update)
