from __future__ import annotations

import json
import struct

import pytest
from conftest import START_MS, InMemoryStore

from meshdots.ingestion.meshcore import build_meshcore_update, ingest_meshcore_envelope, parse_envelope
from meshdots.ingestion.portnum import (
    build_category_record,
    build_dot_update,
    has_usable_telemetry,
    ingest_mesh_event,
)
from meshdots.models.category import Category
from meshdots.state.engine import AggregationEngine
from meshdots.validators import NameValidator

DEVICE = "22782998"
DEVICE_HEX = "!015ba416"
PUBKEY = bytes(range(32))


def _advert_frame(flags: int, *, location: tuple[int, int] | None = None, name: bytes = b"") -> str:
    payload = PUBKEY + struct.pack("<I", 1_700_000_000) + bytes(64) + bytes([flags])
    if location is not None:
        payload += struct.pack("<ii", *location)
    return (bytes([(4 << 2) | 1, 0]) + payload + name).hex()


def _event(portnum: int | str, decoded: dict[str, object] | None = None, **extra: object) -> dict[str, object]:
    event: dict[str, object] = {
        "from": DEVICE_HEX,
        "to": 4294967295,
        "gatewayId": DEVICE_HEX,
        "rxSnr": 6.25,
        "rxRssi": -91,
        "hopLimit": 3,
        "portnum": portnum,
    }
    if decoded is not None:
        event["decoded"] = decoded
    event.update(extra)
    return event


def test_build_dot_update_for_nodeinfo() -> None:
    update = build_dot_update(
        Category.NODEINFO_APP,
        DEVICE,
        {"id": DEVICE_HEX, "longName": "Alice", "short_name": "<<>>"},
        validator=NameValidator(),
        gateway_id="!00000001",
    )

    assert update is not None
    assert update.long_name == "Alice"
    assert update.short_name == ""
    assert update.origin_id == DEVICE_HEX
    assert update.gateway_id == "!00000001"


def test_build_dot_update_skips_nodeinfo_without_valid_names() -> None:
    decoded = {"long_name": "{{bad}}", "short_name": ""}

    assert build_dot_update(Category.NODEINFO_APP, DEVICE, decoded, validator=NameValidator()) is None


def test_build_dot_update_for_position() -> None:
    update = build_dot_update(
        Category.POSITION_APP,
        DEVICE,
        {"latitude_i": 557_000_000, "longitudeI": 376_000_000},
        validator=NameValidator(),
    )

    assert update is not None
    assert update.latitude == 55.7
    assert update.longitude == 37.6


@pytest.mark.parametrize(
    "decoded",
    [
        {"latitude_i": 0, "longitude_i": 376_000_000},
        {"latitude_i": 557_000_000},
        {},
    ],
)
def test_build_dot_update_skips_incomplete_positions(decoded: dict[str, int]) -> None:
    assert build_dot_update(Category.POSITION_APP, DEVICE, decoded, validator=NameValidator()) is None


def test_other_categories_carry_no_dot_fields() -> None:
    assert build_dot_update(Category.TEXT_MESSAGE_APP, DEVICE, {"text": "hi"}, validator=NameValidator()) is None


def test_has_usable_telemetry() -> None:
    assert has_usable_telemetry({"deviceMetrics": {"batteryLevel": 80}})
    assert has_usable_telemetry({"environment_metrics": {"temperature": 21.5}})
    assert has_usable_telemetry({"powerMetrics": {"ch1Voltage": 5}})
    assert not has_usable_telemetry({"device_metrics": {"batteryLevel": -1}})
    assert not has_usable_telemetry({"environmentMetrics": {"temperature": 0}})


def test_build_category_record() -> None:
    record = build_category_record(
        _event(1, {"text": "hi"}, rxTime=1_700_000_000),
        now_ms=START_MS,
        server="gw-1",
    )

    assert record == {
        "timestamp": START_MS,
        "from": DEVICE_HEX,
        "to": 4294967295,
        "rxTime": 1_700_000_000_000,
        "rxSnr": 6.25,
        "hopLimit": 3,
        "rxRssi": -91,
        "gatewayId": DEVICE_HEX,
        "server": "gw-1",
        "rawData": {"portnum": 1, "text": "hi"},
    }


def test_build_category_record_from_nested_packet_and_raw_payload() -> None:
    event = {"from": 5, "portnum": 1, "payload": "aGk=", "packet": {"to": 7, "rxTime": 12}}

    record = build_category_record(event, now_ms=START_MS)

    assert record["to"] == 7
    assert record["rxTime"] == 12_000
    assert record["rawData"] == {"portnum": 1, "payload": "aGk="}
    assert build_category_record({"portnum": 1}, now_ms=START_MS)["rxTime"] == START_MS
    assert build_category_record({"portnum": 1}, now_ms=START_MS)["rawData"] == {"portnum": 1}


@pytest.mark.asyncio
async def test_ingest_nodeinfo_event(engine: AggregationEngine, store: InMemoryStore) -> None:
    event = _event(4, {"id": DEVICE_HEX, "long_name": "Alice", "short_name": "AL"})

    await ingest_mesh_event(engine, event, server="gw-1")

    dot = store.hashes[f"dots:{DEVICE}"]
    assert dot["longName"] == "Alice"
    assert dot["shortName"] == "AL"
    assert dot["mqtt"] == "1"
    assert store.sets["portnums:NODEINFO_APP"] == {DEVICE}
    messages = await engine.get_messages("NODEINFO_APP", DEVICE)
    assert len(messages) == 1
    assert messages[0]["rawData"]["long_name"] == "Alice"
    assert messages[0]["server"] == "gw-1"


@pytest.mark.asyncio
async def test_ingest_position_event(engine: AggregationEngine, store: InMemoryStore) -> None:
    event = _event(3, {"latitude_i": 557_000_000, "longitude_i": 376_000_000})

    await ingest_mesh_event(engine, event)

    assert store.hashes[f"dots:{DEVICE}"]["latitude"] == "55.7"
    assert len(store.lists[f"POSITION_APP:{DEVICE}"]) == 1


@pytest.mark.asyncio
async def test_ingest_zero_position_logs_but_does_not_locate(engine: AggregationEngine, store: InMemoryStore) -> None:
    await ingest_mesh_event(engine, _event(3, {"latitude_i": 0, "longitude_i": 0}))

    assert f"dots:{DEVICE}" not in store.hashes
    assert len(store.lists[f"POSITION_APP:{DEVICE}"]) == 1


@pytest.mark.asyncio
async def test_ingest_drops_empty_telemetry(engine: AggregationEngine, store: InMemoryStore) -> None:
    await ingest_mesh_event(engine, _event(67, {"deviceMetrics": {"batteryLevel": -1}}))
    assert f"TELEMETRY_APP:{DEVICE}" not in store.lists

    await ingest_mesh_event(engine, _event(67, {"deviceMetrics": {"batteryLevel": 77, "voltage": 4.1}}))
    assert len(store.lists[f"TELEMETRY_APP:{DEVICE}"]) == 1


@pytest.mark.asyncio
async def test_ingest_touches_known_sender_for_any_portnum(engine: AggregationEngine, store: InMemoryStore) -> None:
    store.hashes[f"dots:{DEVICE}"] = {"longitude": "1", "latitude": "1", "s_time": str(START_MS - 60_000)}

    await ingest_mesh_event(engine, _event(9999, {"x": 1}))

    assert store.hashes[f"dots:{DEVICE}"]["s_time"] == str(START_MS)
    assert store.lists == {}


@pytest.mark.asyncio
async def test_ingest_ignores_events_without_sender(engine: AggregationEngine, store: InMemoryStore) -> None:
    await ingest_mesh_event(engine, {"from": "gateway", "portnum": 1, "decoded": {"text": "hi"}})

    assert store.calls == []


def test_parse_envelope() -> None:
    assert parse_envelope(b'{"raw": "11"}') == {"raw": "11"}
    assert parse_envelope('{"raw": "11"}') == {"raw": "11"}
    assert parse_envelope(b"[1, 2]") is None
    assert parse_envelope(b"not json") is None


def test_build_meshcore_update_from_advert() -> None:
    envelope = {
        "raw": _advert_frame(0x92, location=(55_755_826, 37_617_300), name=b"Relay\x00"),
        "origin": "observer-1",
        "origin_id": "AA11",
    }

    update = build_meshcore_update(envelope)

    assert update is not None
    assert update.public_key == PUBKEY.hex().upper()
    assert update.name == "Relay"
    assert update.lat == 55.755826
    assert update.lon == 37.6173
    assert update.gateway_origin == "observer-1"
    assert update.gateway_origin_id == "AA11"


def test_build_meshcore_update_ignores_zero_location() -> None:
    update = build_meshcore_update({"raw": _advert_frame(0x91, location=(0, 0))})

    assert update is not None
    assert update.lat is None
    assert update.lon is None
    assert update.gateway_origin == ""


@pytest.mark.parametrize(
    "envelope",
    [
        {},
        {"raw": ""},
        {"raw": 42},
        {"raw": "zz"},
        {"raw": bytes([(2 << 2) | 1, 0, 1, 2, 3]).hex()},
    ],
)
def test_build_meshcore_update_rejects_non_adverts(envelope: dict[str, object]) -> None:
    assert build_meshcore_update(envelope) is None


@pytest.mark.asyncio
async def test_ingest_meshcore_envelope(engine: AggregationEngine, store: InMemoryStore) -> None:
    payload = json.dumps({"raw": _advert_frame(0x81, name=b"Alice"), "origin": "obs"})
    envelope = parse_envelope(payload.encode())
    assert envelope is not None

    dot = await ingest_meshcore_envelope(engine, envelope)

    key = f"dots_meshcore:{PUBKEY.hex().upper()}"
    assert dot is not None
    assert dot.name == "Alice"
    assert store.hashes[key]["gateway_origin"] == "obs"
    assert store.ttls[key] == 10800
    assert await ingest_meshcore_envelope(engine, {"raw": "00"}) is None
