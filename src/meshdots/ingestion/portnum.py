"""Meshtastic portnum events -> engine writes.

A decoded mesh event is a mapping shaped like::

    {
        "from": 22782998,            # origin node (numeric or "!hex")
        "to": 4294967295,
        "gatewayId": "!015ba416",    # node that relayed the packet to MQTT
        "rxTime": 1700000000,        # seconds, optional
        "rxSnr": 6.25, "rxRssi": -91, "hopLimit": 3,
        "portnum": 4,                # number or category name
        "decoded": {...},            # decoded application payload, optional
        "payload": "base64...",      # undecoded payload, optional
    }

``to`` and ``rxTime`` are also read from a nested ``packet`` mapping.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from meshdots.ids import to_numeric_id
from meshdots.ingestion.normalize import compact, first_present, safe_float, safe_int
from meshdots.models.category import Category, category_name
from meshdots.state.events import DotUpdate
from meshdots.validators import NameValidator, is_valid_device_metrics, is_valid_environment_metrics

if TYPE_CHECKING:
    from meshdots.state.engine import AggregationEngine

_logger = logging.getLogger(__name__)

_COORDINATE_SCALE = 1e7


def build_dot_update(
    category: Category,
    device_id: str,
    decoded: Mapping[str, Any],
    *,
    validator: NameValidator,
    gateway_id: str | None = None,
) -> DotUpdate | None:
    """Dot fields carried by one decoded payload.

    NODEINFO yields names when at least one is valid. POSITION yields
    coordinates when both integer coordinates are non-zero. Other
    categories carry no dot fields and yield ``None``.
    """
    origin_id = decoded.get("id")
    origin = str(origin_id) if origin_id else None

    if category is Category.NODEINFO_APP:
        long_name = validator.clean(first_present(decoded, "long_name", "longName"))
        short_name = validator.clean(first_present(decoded, "short_name", "shortName"))
        if not long_name and not short_name:
            return None
        return DotUpdate(
            device_id=device_id,
            category=category,
            long_name=long_name,
            short_name=short_name,
            gateway_id=gateway_id,
            origin_id=origin,
        )

    if category is Category.POSITION_APP:
        latitude_i = safe_int(first_present(decoded, "latitude_i", "latitudeI"))
        longitude_i = safe_int(first_present(decoded, "longitude_i", "longitudeI"))
        if not latitude_i or not longitude_i:
            return None
        return DotUpdate(
            device_id=device_id,
            category=category,
            latitude=latitude_i / _COORDINATE_SCALE,
            longitude=longitude_i / _COORDINATE_SCALE,
            gateway_id=gateway_id,
            origin_id=origin,
        )

    return None


def has_usable_telemetry(decoded: Mapping[str, Any]) -> bool:
    """Reject telemetry whose present metrics block carries nothing useful."""
    device_metrics = first_present(decoded, "device_metrics", "deviceMetrics")
    if device_metrics is not None:
        return is_valid_device_metrics(device_metrics)
    environment_metrics = first_present(decoded, "environment_metrics", "environmentMetrics")
    if environment_metrics is not None:
        return is_valid_environment_metrics(environment_metrics)
    return True


def build_category_record(
    event: Mapping[str, Any],
    *,
    now_ms: int,
    server: str = "",
) -> dict[str, Any]:
    """Message record stored in ``<CATEGORY>:<id>`` lists."""
    packet = event.get("packet")
    packet = packet if isinstance(packet, Mapping) else {}

    rx_time = safe_float(first_present(event, "rxTime") or packet.get("rxTime"))
    portnum = event.get("portnum")
    decoded = event.get("decoded")
    if isinstance(decoded, Mapping) and decoded:
        raw_data: dict[str, Any] = {"portnum": portnum, **decoded}
    else:
        raw_data = compact({"portnum": portnum, "payload": event.get("payload")})

    return {
        "timestamp": now_ms,
        "from": event.get("from"),
        "to": event.get("to", packet.get("to")),
        "rxTime": int(rx_time * 1000) if rx_time else now_ms,
        "rxSnr": event.get("rxSnr"),
        "hopLimit": event.get("hopLimit"),
        "rxRssi": event.get("rxRssi"),
        "gatewayId": event.get("gatewayId"),
        "server": server,
        "rawData": raw_data,
    }


async def ingest_mesh_event(engine: AggregationEngine, event: Mapping[str, Any], *, server: str = "") -> None:
    """Touch the sender's dot, apply its dot fields and log the message."""
    device_id = to_numeric_id(event.get("from"))
    if device_id is None:
        _logger.debug("Dropping event without a valid sender: %r", event.get("from"))
        return

    await engine.merge_device_update(device_id, {})

    category = category_name(event.get("portnum"))
    if category is None:
        _logger.debug("Dropping event with unknown portnum %r from %s", event.get("portnum"), device_id)
        return

    decoded = event.get("decoded")
    decoded = decoded if isinstance(decoded, Mapping) else {}

    update = build_dot_update(
        category,
        device_id,
        decoded,
        validator=engine.name_validator,
        gateway_id=event.get("gatewayId"),
    )
    if update is not None:
        await engine.apply(update)

    if category is Category.TELEMETRY_APP and not has_usable_telemetry(decoded):
        _logger.debug("Dropping empty telemetry from %s", device_id)
        return

    record = build_category_record(event, now_ms=engine.now_ms(), server=server)
    await engine.save_category_message(category, device_id, record)
