"""MeshCore observer feed over MQTT.

Observers publish every packet they hear as a JSON envelope. The paho
network loop runs in its own thread; parsed envelopes are handed to the
asyncio loop with ``call_soon_threadsafe`` and never processed on the paho
thread.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

from meshdots.config import MeshDotsConfig
from meshdots.ingestion.meshcore import parse_envelope

_RECONNECT_MIN_SECONDS = 1
_RECONNECT_MAX_SECONDS = 60


@dataclass(frozen=True)
class MqttSettings:
    """Broker connection details."""

    host: str
    port: int
    topics: tuple[str, ...]
    client_id: str
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_config(cls, config: MeshDotsConfig) -> MqttSettings:
        return cls(
            host=config.mqtt_host,
            port=config.mqtt_port,
            topics=config.mqtt_topics,
            client_id=f"meshdots-{secrets.token_hex(4)}",
            username=config.mqtt_username,
            password=config.mqtt_password,
        )


@dataclass(frozen=True)
class MqttEvent:
    """One parsed MeshCore envelope and the topic it arrived on."""

    topic: str
    payload: dict[str, Any]


class MeshcoreMqttRuntime:
    """Subscribes to observer topics and forwards envelopes to *on_event*.

    *on_event* is always invoked on *loop*. Payloads that are not JSON
    objects are dropped here.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_event: Callable[[MqttEvent], None],
        keepalive: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_event = on_event
        self._keepalive = keepalive
        self._log = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._settings: MqttSettings | None = None
        self._dropped = 0

    @property
    def is_running(self) -> bool:
        return self._client is not None

    @property
    def dropped_payloads(self) -> int:
        """Messages discarded because they were not JSON objects."""
        return self._dropped

    def start(self, settings: MqttSettings) -> None:
        """Connect to the broker and start the paho network thread.

        Subscriptions are (re)issued from the connect callback so they
        survive reconnects.
        """
        self.stop()

        client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(self._log)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)
        client.reconnect_delay_set(min_delay=_RECONNECT_MIN_SECONDS, max_delay=_RECONNECT_MAX_SECONDS)
        client.on_connect = self._handle_connect
        client.on_message = self._handle_message
        client.on_disconnect = self._handle_disconnect

        self._log.debug(
            "Connecting to MQTT broker %s:%s as %s (topics: %s)",
            settings.host,
            settings.port,
            settings.client_id,
            ", ".join(settings.topics) or "-",
        )
        client.connect(settings.host, settings.port, keepalive=self._keepalive)
        client.loop_start()

        self._settings = settings
        self._client = client

    def stop(self) -> None:
        """Disconnect and join the network thread; safe to call twice."""
        client, self._client = self._client, None
        self._settings = None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
        self._log.debug("MQTT runtime stopped")

    # paho callbacks, run on the network thread

    def _handle_connect(
        self,
        client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.value != 0:
            self._log.warning("MQTT broker refused connection: %s", reason_code)
            return
        settings = self._settings
        if settings is None or not settings.topics:
            return
        self._log.info("MQTT connected to %s:%s", settings.host, settings.port)
        client.subscribe([(topic, 0) for topic in settings.topics])

    def _handle_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        envelope = parse_envelope(msg.payload)
        if envelope is None:
            self._dropped += 1
            self._log.debug("Dropping non-JSON payload on %s", msg.topic)
            return
        self._loop.call_soon_threadsafe(self._on_event, MqttEvent(topic=msg.topic, payload=envelope))

    def _handle_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._client is not None:
            self._log.warning("MQTT connection lost (%s), paho will reconnect", reason_code)
