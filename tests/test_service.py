from __future__ import annotations

import asyncio
import json
import struct
from dataclasses import dataclass
from typing import Any

import paho.mqtt.client as mqtt
import pytest
from conftest import InMemoryStore

from meshdots._mqtt import MeshcoreMqttRuntime, MqttEvent, MqttSettings
from meshdots.config import MeshDotsConfig
from meshdots.service import MeshDotsService

PUBKEY = bytes(range(32))


def _advert_envelope(name: bytes = b"Alice") -> dict[str, Any]:
    payload = PUBKEY + struct.pack("<I", 1_700_000_000) + bytes(64) + bytes([0x81])
    return {"raw": (bytes([(4 << 2) | 1, 0]) + payload + name).hex(), "origin": "observer"}


@dataclass
class _ReasonCode:
    value: int = 0


@dataclass
class _Message:
    topic: str
    payload: bytes


class _DummyClient:
    instances: list[_DummyClient] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.connected_to: tuple[str, int, int] | None = None
        self.subscriptions: list[tuple[str, int]] = []
        self.credentials: tuple[str, str | None] | None = None
        self.loop_started = False
        self.disconnected = False
        self.on_connect: Any = None
        self.on_message: Any = None
        self.on_disconnect: Any = None
        _DummyClient.instances.append(self)

    def enable_logger(self, logger: Any) -> None:
        self.logger = logger

    def username_pw_set(self, username: str, password: str | None) -> None:
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay: int = 1, max_delay: int = 120) -> None:
        self.reconnect_delay = (min_delay, max_delay)

    def connect(self, host: str, port: int, keepalive: int = 60) -> None:
        self.connected_to = (host, port, keepalive)

    def loop_start(self) -> None:
        self.loop_started = True

    def loop_stop(self) -> None:
        self.loop_started = False

    def disconnect(self) -> None:
        self.disconnected = True

    def subscribe(self, topics: list[tuple[str, int]]) -> None:
        self.subscriptions.extend(topics)


@pytest.fixture
def dummy_mqtt(monkeypatch: pytest.MonkeyPatch) -> type[_DummyClient]:
    _DummyClient.instances = []
    monkeypatch.setattr(mqtt, "Client", _DummyClient)
    return _DummyClient


@pytest.mark.asyncio
async def test_service_lifecycle_closes_store(store: InMemoryStore) -> None:
    service = MeshDotsService(MeshDotsConfig(), store=store)

    with pytest.raises(RuntimeError):
        _ = service.engine

    async with service as running:
        assert await running.engine.ping() is True

    assert store.closed
    with pytest.raises(RuntimeError):
        _ = service.engine


@pytest.mark.asyncio
async def test_service_ingest_routes_to_engine(store: InMemoryStore) -> None:
    event = {
        "from": 22782998,
        "gatewayId": "!00000001",
        "portnum": 3,
        "decoded": {"id": "!015ba416", "latitude_i": 557_000_000, "longitude_i": 376_000_000},
    }

    async with MeshDotsService(MeshDotsConfig(), store=store) as service:
        await service.ingest(event, server="gw")
        await service.ingest_meshcore(_advert_envelope())

    assert store.hashes["dots:22782998"]["mqtt"] == "0"
    assert f"dots_meshcore:{PUBKEY.hex().upper()}" in store.hashes


@pytest.mark.asyncio
async def test_mqtt_events_are_ingested_before_shutdown(store: InMemoryStore) -> None:
    async with MeshDotsService(MeshDotsConfig(), store=store) as service:
        service._on_mqtt_event(MqttEvent(topic="meshcore/a/b/packets", payload=_advert_envelope(b"Bob")))

    assert store.hashes[f"dots_meshcore:{PUBKEY.hex().upper()}"]["name"] == "Bob"


@pytest.mark.asyncio
async def test_service_starts_and_stops_mqtt(store: InMemoryStore, dummy_mqtt: type[_DummyClient]) -> None:
    config = MeshDotsConfig(
        mqtt_enabled=True,
        mqtt_host="broker.local",
        mqtt_port=1884,
        mqtt_username="observer",
        mqtt_password="secret",
        mqtt_keepalive=30,
    )

    async with MeshDotsService(config, store=store):
        client = dummy_mqtt.instances[-1]
        assert client.connected_to == ("broker.local", 1884, 30)
        assert client.credentials == ("observer", "secret")
        assert client.loop_started

    assert client.disconnected
    assert not client.loop_started


@pytest.mark.asyncio
async def test_runtime_subscribes_and_forwards_envelopes(dummy_mqtt: type[_DummyClient]) -> None:
    events: list[MqttEvent] = []
    runtime = MeshcoreMqttRuntime(loop=asyncio.get_running_loop(), on_event=events.append)
    runtime.start(
        MqttSettings(host="localhost", port=1883, topics=("meshcore/+/+/packets",), client_id="meshdots-test")
    )
    client = dummy_mqtt.instances[-1]
    assert runtime.is_running
    assert client.kwargs["client_id"] == "meshdots-test"

    client.on_connect(client, None, None, _ReasonCode(0), None)
    assert client.subscriptions == [("meshcore/+/+/packets", 0)]

    client.on_message(client, None, _Message("meshcore/x/y/packets", json.dumps({"raw": "11"}).encode()))
    client.on_message(client, None, _Message("meshcore/x/y/packets", b"not json"))
    await asyncio.sleep(0)

    assert events == [MqttEvent(topic="meshcore/x/y/packets", payload={"raw": "11"})]
    assert runtime.dropped_payloads == 1
    assert client.reconnect_delay == (1, 60)

    runtime.stop()
    assert not runtime.is_running
    assert client.disconnected


@pytest.mark.asyncio
async def test_runtime_skips_subscribe_on_refused_connection(dummy_mqtt: type[_DummyClient]) -> None:
    runtime = MeshcoreMqttRuntime(loop=asyncio.get_running_loop(), on_event=lambda event: None)
    runtime.start(MqttSettings(host="localhost", port=1883, topics=("t",), client_id="c"))
    client = dummy_mqtt.instances[-1]

    client.on_connect(client, None, None, _ReasonCode(5), None)

    assert client.subscriptions == []
    runtime.stop()


def test_mqtt_settings_from_config() -> None:
    settings = MqttSettings.from_config(MeshDotsConfig(mqtt_host="broker", mqtt_topics=("a", "b")))

    assert settings.host == "broker"
    assert settings.topics == ("a", "b")
    assert settings.client_id.startswith("meshdots-")
