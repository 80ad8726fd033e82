"""Service lifecycle: store, engine and MQTT listener."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from meshdots._mqtt import MeshcoreMqttRuntime, MqttEvent, MqttSettings
from meshdots.config import MeshDotsConfig
from meshdots.ingestion.meshcore import ingest_meshcore_envelope
from meshdots.ingestion.portnum import ingest_mesh_event
from meshdots.state.engine import AggregationEngine
from meshdots.store.base import KeyValueStore
from meshdots.store.redis import RedisStore

_logger = logging.getLogger(__name__)


class MeshDotsService:
    """Owns the store connection, the aggregation engine and the MQTT runtime.

    Usage::

        async with MeshDotsService(MeshDotsConfig.from_env()) as service:
            dots = await service.engine.get_all_aggregated_state()
    """

    def __init__(self, config: MeshDotsConfig, *, store: KeyValueStore | None = None) -> None:
        self._config = config
        self._store = store
        self._engine: AggregationEngine | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._mqtt_runtime: MeshcoreMqttRuntime | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> MeshDotsService:
        self._loop = asyncio.get_running_loop()
        if self._store is None:
            self._store = RedisStore.from_config(self._config)
        self._engine = AggregationEngine(self._store, config=self._config)
        self._start_mqtt()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self._stop_mqtt()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._store is not None:
            await self._store.close()
        self._engine = None
        self._loop = None

    @property
    def config(self) -> MeshDotsConfig:
        return self._config

    @property
    def engine(self) -> AggregationEngine:
        if self._engine is None:
            raise RuntimeError("MeshDotsService is not running; use 'async with'")
        return self._engine

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, event: Mapping[str, Any], *, server: str = "") -> None:
        """Apply one decoded Meshtastic event."""
        await ingest_mesh_event(self.engine, event, server=server)

    async def ingest_meshcore(self, envelope: Mapping[str, Any]) -> None:
        """Apply one MeshCore MQTT envelope."""
        await ingest_meshcore_envelope(self.engine, envelope)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._pending.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _logger.error("Ingestion task failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    # MQTT
    # ------------------------------------------------------------------

    def _start_mqtt(self) -> None:
        """Best-effort MQTT startup (failures must not break the query side)."""
        if not self._config.mqtt_enabled:
            return
        if self._mqtt_runtime is not None and self._mqtt_runtime.is_running:
            return
        loop = self._loop or asyncio.get_running_loop()
        try:
            runtime = MeshcoreMqttRuntime(
                loop=loop,
                on_event=self._on_mqtt_event,
                keepalive=self._config.mqtt_keepalive,
                logger=_logger,
            )
            runtime.start(MqttSettings.from_config(self._config))
            self._mqtt_runtime = runtime
        except OSError:
            _logger.error("MQTT startup failed", exc_info=True)

    def _stop_mqtt(self) -> None:
        runtime = self._mqtt_runtime
        self._mqtt_runtime = None
        if runtime is not None:
            runtime.stop()

    def _on_mqtt_event(self, event: MqttEvent) -> None:
        """Schedule ingestion of an envelope (called on the loop thread)."""
        if self._engine is None:
            return
        self._track(asyncio.ensure_future(self.ingest_meshcore(event.payload)))
