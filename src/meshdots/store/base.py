"""Key-value store interface used by the aggregation engine.

The engine only needs an ordered associative store with atomic single-key
operations and best-effort multi-key pipelining. Having a protocol here makes
it easy to pass test doubles while keeping the production implementation
(:class:`meshdots.store.redis.RedisStore`) concrete.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class BatchOp:
    """One write queued in a :class:`WriteBatch`."""

    command: str
    key: str
    args: tuple[Any, ...] = ()


@dataclass
class WriteBatch:
    """Writes sent together in one pipeline, without cross-key atomicity."""

    ops: list[BatchOp] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.ops)

    def hset(self, key: str, mapping: Mapping[str, str]) -> WriteBatch:
        self.ops.append(BatchOp("hset", key, (dict(mapping),)))
        return self

    def sadd(self, key: str, *members: str) -> WriteBatch:
        if members:
            self.ops.append(BatchOp("sadd", key, members))
        return self

    def srem(self, key: str, *members: str) -> WriteBatch:
        if members:
            self.ops.append(BatchOp("srem", key, members))
        return self

    def delete(self, key: str) -> WriteBatch:
        self.ops.append(BatchOp("delete", key))
        return self

    def expire(self, key: str, seconds: int) -> WriteBatch:
        self.ops.append(BatchOp("expire", key, (seconds,)))
        return self

    def rpush_capped(self, key: str, value: str, cap: int) -> WriteBatch:
        """Append *value* and keep only the newest *cap* entries."""
        self.ops.append(BatchOp("rpush_capped", key, (value, cap)))
        return self


class KeyValueStore(Protocol):
    """Structural store interface.

    Implementations raise :class:`meshdots.exceptions.StorageError` for any
    failure. Bulk reads return per-key results in input order; a per-key
    failure is returned in place as the exception instance.
    """

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def hgetall(self, key: str) -> dict[str, str]: ...

    async def hgetall_many(self, keys: Sequence[str]) -> list[dict[str, str] | Exception]: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def replace_set(self, key: str, members: Sequence[str]) -> None: ...

    async def lrange(self, key: str, start: int, end: int) -> list[str]: ...

    async def lrange_many(self, keys: Sequence[str], start: int, end: int) -> list[list[str] | Exception]: ...

    async def llen_many(self, keys: Sequence[str]) -> list[int | Exception]: ...

    async def scan_keys(self, pattern: str, *, count: int = 100) -> list[str]: ...

    async def execute(self, batch: WriteBatch) -> None: ...
