from __future__ import annotations

import asyncio
import fnmatch
from collections.abc import Callable, Sequence
from typing import Any

import pytest

from meshdots.config import MeshDotsConfig
from meshdots.exceptions import StorageError
from meshdots.state.engine import AggregationEngine
from meshdots.store.base import WriteBatch

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class InMemoryStore:
    """KeyValueStore double with Redis-like semantics.

    ``fail_ops`` makes the named operations raise StorageError and
    ``slow_ops`` delays them by the given number of seconds.
    """

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.ttls: dict[str, int] = {}
        self.batches: list[WriteBatch] = []
        self.calls: list[str] = []
        self.fail_ops: set[str] = set()
        self.slow_ops: dict[str, float] = {}
        self.closed = False

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        delay = self.slow_ops.get(operation)
        if delay:
            await asyncio.sleep(delay)
        if operation in self.fail_ops:
            raise StorageError(f"{operation} failed", operation=operation)

    def _all_keys(self) -> list[str]:
        return [*self.strings, *self.hashes, *self.sets, *self.lists]

    def _delete_key(self, key: str) -> int:
        removed = 0
        for space in (self.strings, self.hashes, self.sets, self.lists):
            if key in space:
                del space[key]
                removed = 1
        self.ttls.pop(key, None)
        return removed

    async def ping(self) -> bool:
        await self._enter("ping")
        return True

    async def close(self) -> None:
        self.closed = True

    async def get(self, key: str) -> str | None:
        await self._enter("get")
        return self.strings.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await self._enter("set")
        self.strings[key] = value
        if ttl_seconds is not None:
            self.ttls[key] = ttl_seconds

    async def delete(self, *keys: str) -> int:
        await self._enter("delete")
        return sum(self._delete_key(key) for key in keys)

    async def exists(self, key: str) -> bool:
        await self._enter("exists")
        return key in self._all_keys()

    async def hgetall(self, key: str) -> dict[str, str]:
        await self._enter("hgetall")
        return dict(self.hashes.get(key, {}))

    async def hgetall_many(self, keys: Sequence[str]) -> list[dict[str, str] | Exception]:
        await self._enter("hgetall_many")
        return [dict(self.hashes.get(key, {})) for key in keys]

    async def smembers(self, key: str) -> set[str]:
        await self._enter("smembers")
        return set(self.sets.get(key, set()))

    async def replace_set(self, key: str, members: Sequence[str]) -> None:
        await self._enter("replace_set")
        self.sets.pop(key, None)
        if members:
            self.sets[key] = set(members)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        await self._enter("lrange")
        return _lrange(self.lists.get(key, []), start, end)

    async def lrange_many(self, keys: Sequence[str], start: int, end: int) -> list[list[str] | Exception]:
        await self._enter("lrange_many")
        return [_lrange(self.lists.get(key, []), start, end) for key in keys]

    async def llen_many(self, keys: Sequence[str]) -> list[int | Exception]:
        await self._enter("llen_many")
        return [len(self.lists.get(key, [])) for key in keys]

    async def scan_keys(self, pattern: str, *, count: int = 100) -> list[str]:
        await self._enter("scan_keys")
        return [key for key in self._all_keys() if fnmatch.fnmatchcase(key, pattern)]

    async def execute(self, batch: WriteBatch) -> None:
        await self._enter("execute")
        self.batches.append(batch)
        for op in batch.ops:
            if op.command == "hset":
                self.hashes.setdefault(op.key, {}).update(op.args[0])
            elif op.command == "sadd":
                self.sets.setdefault(op.key, set()).update(op.args)
            elif op.command == "srem":
                members = self.sets.get(op.key)
                if members is not None:
                    members.difference_update(op.args)
                    if not members:
                        del self.sets[op.key]
            elif op.command == "delete":
                self._delete_key(op.key)
            elif op.command == "expire":
                self.ttls[op.key] = op.args[0]
            elif op.command == "rpush_capped":
                value, cap = op.args
                items = self.lists.setdefault(op.key, [])
                items.append(value)
                del items[:-cap]
            else:
                raise AssertionError(f"unexpected batch command {op.command}")


def _lrange(items: list[str], start: int, end: int) -> list[str]:
    size = len(items)
    if start < 0:
        start = max(size + start, 0)
    if end < 0:
        end = size + end
    if start > end or start >= size:
        return []
    return items[start : end + 1]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(store: InMemoryStore, clock: FakeClock) -> AggregationEngine:
    return AggregationEngine(store, config=MeshDotsConfig(pipeline_timeout_seconds=0.05), clock=clock)


def seed_dot(store: InMemoryStore, device_id: str, **fields: Any) -> None:
    """Write a raw ``dots:<id>`` hash and index it, bypassing the engine."""
    store.hashes[f"dots:{device_id}"] = {key: str(value) for key, value in fields.items()}
    store.sets.setdefault("devices:active", set()).add(device_id)


@pytest.fixture
def seed(store: InMemoryStore) -> Callable[..., None]:
    def _seed(device_id: str, **fields: Any) -> None:
        seed_dot(store, device_id, **fields)

    return _seed
