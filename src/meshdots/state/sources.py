"""Where the engine gets the list of known device ids from.

The ``devices:active`` set is eventually consistent with the ``dots:*``
hashes. When it is empty or unreadable the ids are recovered with a
cursor-driven key scan, which is slower but always available.
"""

from __future__ import annotations

import logging
from typing import Protocol

from meshdots._cache import IndexCache
from meshdots._constants import DEVICE_INDEX_KEY, DOT_KEY_PREFIX
from meshdots.exceptions import StorageError
from meshdots.store.base import KeyValueStore

_logger = logging.getLogger(__name__)


class DeviceIdSource(Protocol):
    async def device_ids(self) -> list[str]: ...


class IndexedDeviceIds:
    """Reads the ``devices:active`` set."""

    def __init__(self, store: KeyValueStore, key: str = DEVICE_INDEX_KEY) -> None:
        self._store = store
        self._key = key

    async def device_ids(self) -> list[str]:
        return sorted(await self._store.smembers(self._key))


class ScanDeviceIds:
    """Derives ids from the ``<prefix><id>`` keys found by a SCAN."""

    def __init__(self, store: KeyValueStore, prefix: str = DOT_KEY_PREFIX, *, batch_size: int = 100) -> None:
        self._store = store
        self._prefix = prefix
        self._batch_size = batch_size

    async def device_ids(self) -> list[str]:
        keys = await self._store.scan_keys(f"{self._prefix}*", count=self._batch_size)
        ids = {key[len(self._prefix) :] for key in keys if key.startswith(self._prefix)}
        ids.discard("")
        return sorted(ids)


class FallbackDeviceIds:
    """Index first, scan when the index is empty or unavailable.

    A non-empty index result is cached in process for the lifetime of the
    :class:`IndexCache`. A scan after an empty index also rebuilds the index.
    """

    def __init__(
        self,
        store: KeyValueStore,
        primary: DeviceIdSource,
        fallback: DeviceIdSource,
        *,
        cache: IndexCache[list[str]],
        index_key: str = DEVICE_INDEX_KEY,
    ) -> None:
        self._store = store
        self._primary = primary
        self._fallback = fallback
        self._cache = cache
        self._index_key = index_key

    def invalidate(self) -> None:
        self._cache.invalidate()

    async def device_ids(self) -> list[str]:
        cached = self._cache.get()
        if cached is not None:
            return list(cached)

        try:
            ids = await self._primary.device_ids()
        except StorageError:
            _logger.error("Device index read failed, falling back to key scan", exc_info=True)
            return await self._fallback.device_ids()

        if ids:
            self._cache.set(ids)
            return list(ids)

        ids = await self._fallback.device_ids()
        if ids:
            try:
                await self.rebuild(ids)
            except StorageError:
                _logger.warning("Device index rebuild failed", exc_info=True)
        return ids

    async def rebuild(self, ids: list[str] | None = None) -> list[str]:
        """Replace the index set with *ids* (scanned when omitted)."""
        if ids is None:
            ids = await self._fallback.device_ids()
        await self._store.replace_set(self._index_key, ids)
        self._cache.invalidate()
        _logger.info("Rebuilt device index with %d devices", len(ids))
        return ids
