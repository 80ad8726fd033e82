"""Explicit cache objects owned by the aggregation engine.

* :class:`BoundedMemo` - size-bounded memo with oldest-first eviction.
* :class:`IndexCache` - in-process value with a monotonic-clock TTL.
* :class:`DerivedCache` - JSON documents stored in the key-value store
  with an expiry, invalidated eagerly on writes.
"""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any, Generic, TypeVar

from meshdots.exceptions import StorageError
from meshdots.store.base import KeyValueStore

_logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class BoundedMemo(Generic[K, V]):
    """Memo holding at most ``max_size`` entries.

    Lookups do not refresh an entry: when full, the entry inserted first
    is evicted.
    """

    def __init__(self, max_size: int = 1000) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._entries: OrderedDict[K, V] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def max_size(self) -> int:
        return self._max_size

    def get(self, key: K, default: Any = None) -> V | Any:
        return self._entries.get(key, default)

    def put(self, key: K, value: V) -> None:
        if key in self._entries:
            self._entries[key] = value
            return
        while len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
        self._entries[key] = value

    def get_or_compute(self, key: K, compute: Callable[[K], V]) -> V:
        cached = self._entries.get(key, _MISSING)
        if cached is not _MISSING:
            return cached  # type: ignore[return-value]
        value = compute(key)
        self.put(key, value)
        return value

    def clear(self) -> None:
        self._entries.clear()


class IndexCache(Generic[V]):
    """Single in-process value that expires ``ttl_seconds`` after being set."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: V | None = None
        self._expires_at = 0.0

    def get(self) -> V | None:
        if self._value is None:
            return None
        if self._clock() >= self._expires_at:
            self._value = None
            return None
        return self._value

    def set(self, value: V) -> None:
        self._value = value
        self._expires_at = self._clock() + self._ttl

    def invalidate(self) -> None:
        self._value = None
        self._expires_at = 0.0


class DerivedCache:
    """Short-lived derived views stored as JSON under fixed keys.

    Cache failures never affect correctness: a failed read is a miss and a
    failed write or invalidation is only logged.
    """

    def __init__(self, store: KeyValueStore, *, ttl_seconds: int) -> None:
        self._store = store
        self._ttl = ttl_seconds

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._store.get(key)
        except StorageError:
            _logger.warning("Derived cache read failed for %s", key, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            _logger.warning("Discarding malformed derived cache entry %s", key)
            return None

    async def put(self, key: str, value: Any) -> None:
        try:
            await self._store.set(key, json.dumps(value, ensure_ascii=False), ttl_seconds=self._ttl)
        except StorageError:
            _logger.warning("Derived cache write failed for %s", key, exc_info=True)

    async def invalidate(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._store.delete(*keys)
        except StorageError:
            _logger.warning("Derived cache invalidation failed for %s", ", ".join(keys), exc_info=True)
