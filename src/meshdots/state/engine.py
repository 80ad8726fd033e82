"""Device-state aggregation engine.

This is the only component allowed to write aggregated device state. It
merges partial observations into one ``dots:<id>`` hash per node, keeps the
device and category indices in step, appends per-category message logs and
serves the read views the query facade exposes.

Storage failures never escape: they are logged with the operation and the
device id, and the operation degrades to an empty result or a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from pydantic import ValidationError

from meshdots._cache import DerivedCache, IndexCache
from meshdots._constants import (
    ALL_DOTS_CACHE_KEY,
    CATEGORY_INDEX_PREFIX,
    DEVICE_INDEX_KEY,
    DOT_KEY_PREFIX,
    MAP_DATA_CACHE_KEY,
    MESHCORE_DOT_KEY_PREFIX,
    MESHCORE_DOTS_CACHE_KEY,
)
from meshdots.config import MeshDotsConfig
from meshdots.exceptions import StorageError, StorageTimeoutError
from meshdots.ids import to_hex_id, to_numeric_id
from meshdots.ingestion.normalize import dump_json_record, load_json_record, safe_float, safe_int
from meshdots.models.category import QUERYABLE_CATEGORIES, Category, category_name
from meshdots.models.dot import DOT_FIELD_ALIASES, DeviceDot, MapPoint, MeshcoreDot
from meshdots.state.events import DotUpdate, MeshcoreUpdate
from meshdots.state.policy import (
    gateway_flag,
    has_observable_change,
    is_debounced,
    is_duplicate_record,
    should_persist,
)
from meshdots.state.sources import FallbackDeviceIds, IndexedDeviceIds, ScanDeviceIds
from meshdots.store.base import KeyValueStore, WriteBatch
from meshdots.validators import NameValidator

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def dot_key(device_id: str) -> str:
    return f"{DOT_KEY_PREFIX}{device_id}"


def category_key(category: Category, device_id: str) -> str:
    return f"{category.value}:{device_id}"


def category_index_key(category: Category) -> str:
    return f"{CATEGORY_INDEX_PREFIX}{category.value}"


def meshcore_dot_key(public_key: str) -> str:
    return f"{MESHCORE_DOT_KEY_PREFIX}{public_key}"


class AggregationEngine:
    """Merge, index and query per-device state on a key-value store.

    Parameters
    ----------
    store : KeyValueStore
        Backing store. Every call may raise :class:`StorageError`.
    config : MeshDotsConfig, optional
        Windows, TTLs and timeouts. Defaults to ``MeshDotsConfig()``.
    clock : callable, optional
        Returns the current time in epoch milliseconds. Drives debounce,
        duplicate detection, ``s_time`` stamps and the index cache.
    name_validator : NameValidator, optional
        Memoized name check. A private instance is created when omitted.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        config: MeshDotsConfig | None = None,
        clock: Callable[[], int] = _now_ms,
        name_validator: NameValidator | None = None,
    ) -> None:
        self._store = store
        self._config = config or MeshDotsConfig()
        self._clock = clock
        self._names = name_validator or NameValidator()
        self._derived = DerivedCache(store, ttl_seconds=self._config.cache_ttl_seconds)
        self._device_ids = FallbackDeviceIds(
            store,
            IndexedDeviceIds(store),
            ScanDeviceIds(store, batch_size=self._config.scan_batch_size),
            cache=self._new_index_cache(),
        )
        self._category_ids: dict[Category, IndexCache[list[str]]] = {}

    @property
    def store(self) -> KeyValueStore:
        return self._store

    @property
    def config(self) -> MeshDotsConfig:
        return self._config

    @property
    def name_validator(self) -> NameValidator:
        return self._names

    def now_ms(self) -> int:
        return self._clock()

    def _new_index_cache(self) -> IndexCache[list[str]]:
        return IndexCache(self._config.index_cache_ttl_seconds, clock=lambda: self._clock() / 1000.0)

    async def _bounded(self, awaitable: Awaitable[T], operation: str) -> T:
        """Race a pipelined read against the configured timeout."""
        timeout = self._config.pipeline_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except TimeoutError as exc:
            raise StorageTimeoutError(
                f"{operation} did not complete within {timeout}s", operation=operation
            ) from exc

    async def _after_dot_write(self) -> None:
        await self._derived.invalidate(ALL_DOTS_CACHE_KEY, MAP_DATA_CACHE_KEY)
        self._device_ids.invalidate()
        self._category_ids.clear()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            return await self._store.ping()
        except StorageError:
            _logger.error("Store ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        await self._store.close()

    # ------------------------------------------------------------------
    # Dot write path
    # ------------------------------------------------------------------

    def _normalize_fields(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Canonical keys, parsed coordinates, validated names."""
        working = {key: value for key, value in fields.items() if value is not None}
        for legacy, current in DOT_FIELD_ALIASES.items():
            if legacy in working:
                value = working.pop(legacy)
                working.setdefault(current, value)

        normalized: dict[str, Any] = {}
        if "longitude" in working or "latitude" in working:
            normalized["longitude"] = safe_float(working.get("longitude")) or 0.0
            normalized["latitude"] = safe_float(working.get("latitude")) or 0.0
        for name_key in ("longName", "shortName"):
            if name_key in working:
                normalized[name_key] = self._names.clean(working[name_key])
        return normalized

    @staticmethod
    def _merge(existing: DeviceDot | None, incoming: Mapping[str, Any], now_ms: int, flag: str | None) -> DeviceDot:
        update: dict[str, Any] = {"last_update_time": now_ms}
        if "longitude" in incoming:
            update["longitude"] = incoming["longitude"]
            update["latitude"] = incoming["latitude"]
        if "longName" in incoming:
            update["long_name"] = incoming["longName"]
        if "shortName" in incoming:
            update["short_name"] = incoming["shortName"]
        if flag is not None:
            update["mqtt"] = flag
        return (existing or DeviceDot()).model_copy(update=update)

    async def merge_device_update(
        self,
        device_id: str,
        fields: Mapping[str, Any],
        category: Category | str | int | None = None,
        *,
        gateway_id: str | None = None,
        origin_id: str | None = None,
    ) -> DeviceDot | None:
        """Merge one partial observation into ``dots:<device_id>``.

        Returns the stored dot after the call: the unchanged record when the
        update was debounced, the written record, or ``None`` when the device
        has (or kept) no persisted record.
        """
        numeric = to_numeric_id(device_id)
        if numeric is None:
            _logger.debug("Ignoring update for invalid device id %r", device_id)
            return None

        resolved: Category | None = None
        if category is not None:
            resolved = category_name(category)
            if resolved is None:
                _logger.debug("Unknown category %r for device %s", category, numeric)

        key = dot_key(numeric)
        incoming = self._normalize_fields(fields)

        try:
            raw = await self._store.hgetall(key)
            now = self._clock()
            existing = DeviceDot.from_store(raw) if raw else None

            if (
                existing is not None
                and is_debounced(existing.last_update_time, now, self._config.debounce_ms)
                and not has_observable_change(existing, incoming)
            ):
                _logger.debug("Debounced unchanged update for device %s", numeric)
                return existing

            merged = self._merge(existing, incoming, now, gateway_flag(gateway_id, origin_id))
            batch = WriteBatch()

            if not should_persist(merged, self._names):
                if not raw:
                    return None
                batch.delete(key).srem(DEVICE_INDEX_KEY, numeric)
                if resolved is not None:
                    batch.srem(category_index_key(resolved), numeric)
                await self._store.execute(batch)
                _logger.info("Removed dot %s: no location and no valid name", numeric)
                await self._after_dot_write()
                return None

            batch.hset(key, merged.to_store()).sadd(DEVICE_INDEX_KEY, numeric)
            if resolved is not None:
                batch.sadd(category_index_key(resolved), numeric)
            await self._store.execute(batch)
        except StorageError:
            _logger.error("merge_device_update failed for device %s", numeric, exc_info=True)
            return None

        await self._after_dot_write()
        return merged

    async def apply(self, update: DotUpdate) -> DeviceDot | None:
        """Merge a normalized :class:`DotUpdate`."""
        return await self.merge_device_update(
            update.device_id,
            update.fields(),
            update.category,
            gateway_id=update.gateway_id,
            origin_id=update.origin_id,
        )

    # ------------------------------------------------------------------
    # Dot read path
    # ------------------------------------------------------------------

    def _parse_dot(self, device_id: str, raw: Mapping[str, Any]) -> DeviceDot | None:
        try:
            dot = DeviceDot.from_store(dict(raw))
        except ValidationError:
            _logger.warning("Discarding unreadable dot for device %s", device_id, exc_info=True)
            return None
        return dot if should_persist(dot, self._names) else None

    async def _read_dots(self, device_ids: list[str]) -> dict[str, DeviceDot]:
        if not device_ids:
            return {}
        results = await self._bounded(
            self._store.hgetall_many([dot_key(device_id) for device_id in device_ids]),
            "hgetall_many",
        )
        dots: dict[str, DeviceDot] = {}
        for device_id, result in zip(device_ids, results, strict=True):
            if isinstance(result, Exception):
                _logger.warning("Skipping dot %s: %s", device_id, result)
                continue
            if not result:
                continue
            dot = self._parse_dot(device_id, result)
            if dot is not None:
                dots[device_id] = dot
        return dots

    async def get_aggregated_state(self, device_id: str) -> DeviceDot | None:
        numeric = to_numeric_id(device_id)
        if numeric is None:
            return None
        try:
            raw = await self._store.hgetall(dot_key(numeric))
        except StorageError:
            _logger.error("get_aggregated_state failed for device %s", numeric, exc_info=True)
            return None
        if not raw:
            return None
        return self._parse_dot(numeric, raw)

    async def get_all_aggregated_state(self) -> dict[str, DeviceDot]:
        """Every persisted dot, keyed by numeric device id (cached)."""
        cached = await self._derived.get(ALL_DOTS_CACHE_KEY)
        if isinstance(cached, dict):
            return {
                device_id: DeviceDot.from_store(values)
                for device_id, values in cached.items()
                if isinstance(values, dict)
            }

        try:
            dots = await self._read_dots(await self._device_ids.device_ids())
        except StorageError:
            _logger.error("get_all_aggregated_state failed", exc_info=True)
            return {}

        await self._derived.put(ALL_DOTS_CACHE_KEY, {device_id: dot.to_api() for device_id, dot in dots.items()})
        return dots

    async def get_minimal_map_view(self) -> dict[str, MapPoint]:
        """Position and freshness of every located dot (cached)."""
        cached = await self._derived.get(MAP_DATA_CACHE_KEY)
        if isinstance(cached, dict):
            return {
                device_id: MapPoint.model_validate(values)
                for device_id, values in cached.items()
                if isinstance(values, dict)
            }

        try:
            dots = await self._read_dots(await self._device_ids.device_ids())
        except StorageError:
            _logger.error("get_minimal_map_view failed", exc_info=True)
            return {}

        points = {device_id: MapPoint.from_dot(dot) for device_id, dot in dots.items() if dot.has_location}
        await self._derived.put(MAP_DATA_CACHE_KEY, {device_id: point.model_dump() for device_id, point in points.items()})
        return points

    # ------------------------------------------------------------------
    # Indices
    # ------------------------------------------------------------------

    async def get_active_device_ids(self) -> list[str]:
        try:
            return await self._device_ids.device_ids()
        except StorageError:
            _logger.error("get_active_device_ids failed", exc_info=True)
            return []

    async def rebuild_device_index(self) -> list[str]:
        """Replace ``devices:active`` with the ids found by scanning ``dots:*``."""
        try:
            return await self._device_ids.rebuild()
        except StorageError:
            _logger.error("rebuild_device_index failed", exc_info=True)
            return []

    async def get_devices_by_category(self, category: Category | str | int) -> list[str]:
        resolved = category_name(category)
        if resolved is None:
            return []

        cache = self._category_ids.get(resolved)
        if cache is None:
            cache = self._category_ids[resolved] = self._new_index_cache()
        cached = cache.get()
        if cached is not None:
            return list(cached)

        try:
            ids = sorted(await self._store.smembers(category_index_key(resolved)))
        except StorageError:
            _logger.error("Category index read failed for %s, scanning", resolved, exc_info=True)
            try:
                ids = await ScanDeviceIds(
                    self._store, f"{resolved.value}:", batch_size=self._config.scan_batch_size
                ).device_ids()
            except StorageError:
                _logger.error("get_devices_by_category scan failed for %s", resolved, exc_info=True)
                return []
            return ids

        cache.set(ids)
        return ids

    # ------------------------------------------------------------------
    # Category message logs
    # ------------------------------------------------------------------

    async def is_duplicate(
        self,
        category: Category | str | int,
        device_id: str,
        message: Mapping[str, Any],
        window_ms: int | None = None,
    ) -> bool:
        """Whether *message* repeats the newest stored record for the device."""
        resolved = category_name(category)
        numeric = to_numeric_id(device_id)
        if resolved is None or numeric is None:
            return False
        window = self._config.duplicate_window_ms if window_ms is None else window_ms

        try:
            latest = await self._store.lrange(category_key(resolved, numeric), -1, -1)
        except StorageError:
            _logger.error("is_duplicate failed for device %s", numeric, exc_info=True)
            return False
        if not latest:
            return False
        previous = load_json_record(latest[0])
        if previous is None:
            return False

        # Compare in stored form: tuples, bytes and int keys do not survive JSON.
        incoming = load_json_record(dump_json_record(dict(message))) or {}
        now = safe_int(message.get("timestamp")) or self._clock()
        return is_duplicate_record(previous, incoming, now_ms=now, window_ms=window)

    async def save_category_message(
        self,
        category: Category | str | int,
        device_id: str,
        message: Mapping[str, Any],
    ) -> bool:
        """Append a message record to ``<CATEGORY>:<device_id>``.

        Returns ``False`` when the category or device is unknown, the record
        duplicates the newest stored one, or the write failed.
        """
        resolved = category_name(category)
        numeric = to_numeric_id(device_id)
        if resolved is None or numeric is None:
            _logger.debug("Not logging message for category %r device %r", category, device_id)
            return False

        record: dict[str, Any] = {"timestamp": self._clock(), **message}
        if await self.is_duplicate(resolved, numeric, record):
            _logger.debug("Skipping duplicate %s message for device %s", resolved, numeric)
            return False

        batch = WriteBatch()
        batch.rpush_capped(category_key(resolved, numeric), dump_json_record(record), self._config.max_category_messages)
        batch.sadd(category_index_key(resolved), numeric)
        try:
            await self._store.execute(batch)
        except StorageError:
            _logger.error("save_category_message failed for %s device %s", resolved, numeric, exc_info=True)
            return False

        self._category_ids.pop(resolved, None)
        return True

    @staticmethod
    def _parse_messages(raw_items: list[str]) -> list[dict[str, Any]]:
        """Decode stored records newest-first, skipping malformed entries."""
        messages: list[dict[str, Any]] = []
        for item in reversed(raw_items):
            record = load_json_record(item)
            if record is not None:
                messages.append(record)
        return messages

    async def get_messages(
        self,
        category: Category | str | int,
        device_id: str,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Up to *limit* newest records for one device, newest first."""
        resolved = category_name(category)
        numeric = to_numeric_id(device_id)
        if resolved is None or numeric is None:
            return []
        count = self._config.max_category_messages if limit is None else limit
        if count <= 0:
            return []

        try:
            raw_items = await self._store.lrange(category_key(resolved, numeric), -count, -1)
        except StorageError:
            _logger.error("get_messages failed for %s device %s", resolved, numeric, exc_info=True)
            return []
        return self._parse_messages(raw_items)

    async def _category_keys(self, category: Category) -> list[str]:
        prefix = f"{category.value}:"
        keys = await self._store.scan_keys(f"{prefix}*", count=self._config.scan_batch_size)
        return sorted(key for key in keys if len(key) > len(prefix))

    async def get_all_messages(self, category: Category | str | int) -> dict[str, list[dict[str, Any]]]:
        """Every device's records for *category*, newest first per device."""
        resolved = category_name(category)
        if resolved is None:
            return {}

        try:
            keys = await self._category_keys(resolved)
            if not keys:
                return {}
            results = await self._bounded(
                self._store.lrange_many(keys, -self._config.max_category_messages, -1),
                "lrange_many",
            )
        except StorageError:
            _logger.error("get_all_messages failed for %s", resolved, exc_info=True)
            return {}

        all_messages: dict[str, list[dict[str, Any]]] = {}
        for key, result in zip(keys, results, strict=True):
            if isinstance(result, Exception):
                _logger.warning("Skipping message list %s: %s", key, result)
                continue
            messages = self._parse_messages(result)
            if messages:
                all_messages[key.split(":", 1)[1]] = messages
        return all_messages

    async def get_category_statistics(self) -> dict[str, dict[str, int]]:
        """``deviceCount`` and ``totalMessages`` for each queryable category."""
        stats: dict[str, dict[str, int]] = {}
        try:
            for category in QUERYABLE_CATEGORIES:
                keys = await self._category_keys(category)
                total = 0
                if keys:
                    lengths = await self._bounded(self._store.llen_many(keys), "llen_many")
                    total = sum(length for length in lengths if isinstance(length, int))
                stats[category.value] = {"deviceCount": len(keys), "totalMessages": total}
        except StorageError:
            _logger.error("get_category_statistics failed", exc_info=True)
            return {}
        return stats

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_all_data_for(self, device_id: str) -> int:
        """Delete the dot, message logs and index entries of one device.

        Accepts either identifier form. Returns the number of keys deleted.
        """
        numeric = to_numeric_id(device_id)
        hex_id = to_hex_id(device_id)
        if numeric is None or hex_id is None:
            _logger.debug("Not deleting data for invalid device id %r", device_id)
            return 0

        known_keys = [category_key(category, numeric) for category in QUERYABLE_CATEGORIES]
        known_keys.append(dot_key(numeric))

        try:
            to_delete: dict[str, None] = {}
            for key in known_keys:
                if await self._store.exists(key):
                    to_delete[key] = None
            for pattern in (f"*:{numeric}", f"*:{hex_id}"):
                for key in await self._store.scan_keys(pattern, count=self._config.scan_batch_size):
                    to_delete.setdefault(key, None)

            deleted = await self._store.delete(*to_delete) if to_delete else 0

            batch = WriteBatch().srem(DEVICE_INDEX_KEY, numeric)
            for category in Category:
                batch.srem(category_index_key(category), numeric)
            await self._store.execute(batch)
        except StorageError:
            _logger.error("delete_all_data_for failed for device %s", numeric, exc_info=True)
            return 0

        await self._after_dot_write()
        _logger.info("Deleted %d keys for device %s (%s)", deleted, numeric, hex_id)
        return deleted

    # ------------------------------------------------------------------
    # MeshCore dots
    # ------------------------------------------------------------------

    async def save_meshcore_dot(self, update: MeshcoreUpdate) -> MeshcoreDot | None:
        """Merge an ADVERT observation into ``dots_meshcore:<public key>``.

        Non-zero coordinates and non-empty valid names replace the stored
        values; otherwise the stored values are kept. Gateway fields are
        always replaced. The record expires after the configured TTL.
        """
        key = meshcore_dot_key(update.public_key)
        try:
            raw = await self._store.hgetall(key)
            existing = MeshcoreDot.from_store(raw) if raw else MeshcoreDot()
            name = self._names.clean(update.name)
            dot = MeshcoreDot(
                public_key=update.public_key,
                device_id=update.device_id or existing.device_id or update.public_key,
                name=name or existing.name,
                lat=update.lat if update.lat else existing.lat,
                lon=update.lon if update.lon else existing.lon,
                gateway_origin=update.gateway_origin,
                gateway_origin_id=update.gateway_origin_id,
                s_time=self._clock(),
            )
            batch = WriteBatch().hset(key, dot.to_store()).expire(key, self._config.meshcore_dot_ttl_seconds)
            await self._store.execute(batch)
        except StorageError:
            _logger.error("save_meshcore_dot failed for %s", update.public_key, exc_info=True)
            return None

        await self._derived.invalidate(MESHCORE_DOTS_CACHE_KEY)
        return dot

    async def get_meshcore_dot(self, public_key: str) -> MeshcoreDot | None:
        key_id = public_key.strip().upper()
        try:
            raw = await self._store.hgetall(meshcore_dot_key(key_id))
        except StorageError:
            _logger.error("get_meshcore_dot failed for %s", key_id, exc_info=True)
            return None
        if not raw:
            return None
        return MeshcoreDot.from_store({**raw, "public_key": key_id})

    async def get_all_meshcore_dots(self) -> dict[str, MeshcoreDot]:
        """Every unexpired MeshCore dot, keyed by public key (cached)."""
        cached = await self._derived.get(MESHCORE_DOTS_CACHE_KEY)
        if isinstance(cached, dict):
            return {
                public_key: MeshcoreDot.model_validate(values)
                for public_key, values in cached.items()
                if isinstance(values, dict)
            }

        try:
            keys = sorted(
                await self._store.scan_keys(f"{MESHCORE_DOT_KEY_PREFIX}*", count=self._config.scan_batch_size)
            )
            results = await self._bounded(self._store.hgetall_many(keys), "hgetall_many") if keys else []
        except StorageError:
            _logger.error("get_all_meshcore_dots failed", exc_info=True)
            return {}

        dots: dict[str, MeshcoreDot] = {}
        for key, result in zip(keys, results, strict=True):
            if isinstance(result, Exception):
                _logger.warning("Skipping MeshCore dot %s: %s", key, result)
                continue
            if not result:
                continue
            public_key = key[len(MESHCORE_DOT_KEY_PREFIX) :]
            dots[public_key] = MeshcoreDot.from_store({**result, "public_key": public_key})

        await self._derived.put(MESHCORE_DOTS_CACHE_KEY, {pk: dot.model_dump() for pk, dot in dots.items()})
        return dots
