"""Redis-backed key-value store."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from meshdots.config import MeshDotsConfig
from meshdots.exceptions import StorageError
from meshdots.store.base import WriteBatch

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class RedisStore:
    """:class:`~meshdots.store.base.KeyValueStore` on ``redis.asyncio``.

    Pipelines are created with ``transaction=False``: commands are sent in
    one round trip but keys are not updated atomically together.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_config(cls, config: MeshDotsConfig) -> RedisStore:
        client = aioredis.Redis.from_url(
            config.resolved_redis_url,
            password=config.redis_password,
            decode_responses=True,
        )
        return cls(client)

    async def _call(self, operation: str, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except RedisError as exc:
            raise StorageError(f"{operation} failed for {key!r}: {exc}", operation=operation, key=key) from exc

    async def _pipelined(self, operation: str, keys: Sequence[str], queue: Callable[[Any, str], None]) -> list[Any]:
        if not keys:
            return []

        async def run() -> list[Any]:
            async with self._redis.pipeline(transaction=False) as pipe:
                for key in keys:
                    queue(pipe, key)
                return list(await pipe.execute(raise_on_error=False))

        return await self._call(operation, f"{len(keys)} keys", run)

    async def ping(self) -> bool:
        return bool(await self._call("ping", "", self._redis.ping))

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError:
            _logger.warning("Error closing store connection", exc_info=True)

    async def get(self, key: str) -> str | None:
        return await self._call("get", key, lambda: self._redis.get(key))

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await self._call("set", key, lambda: self._redis.set(key, value, ex=ttl_seconds))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", ",".join(keys), lambda: self._redis.delete(*keys)))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", key, lambda: self._redis.exists(key)))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._call("hgetall", key, lambda: self._redis.hgetall(key)))

    async def hgetall_many(self, keys: Sequence[str]) -> list[dict[str, str] | Exception]:
        results = await self._pipelined("hgetall", keys, lambda pipe, key: pipe.hgetall(key))
        return [r if isinstance(r, Exception) else dict(r or {}) for r in results]

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call("smembers", key, lambda: self._redis.smembers(key)))

    async def replace_set(self, key: str, members: Sequence[str]) -> None:
        async def run() -> None:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.delete(key)
                if members:
                    pipe.sadd(key, *members)
                await pipe.execute()

        await self._call("replace_set", key, run)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return list(await self._call("lrange", key, lambda: self._redis.lrange(key, start, end)))

    async def lrange_many(self, keys: Sequence[str], start: int, end: int) -> list[list[str] | Exception]:
        results = await self._pipelined("lrange", keys, lambda pipe, key: pipe.lrange(key, start, end))
        return [r if isinstance(r, Exception) else list(r or []) for r in results]

    async def llen_many(self, keys: Sequence[str]) -> list[int | Exception]:
        results = await self._pipelined("llen", keys, lambda pipe, key: pipe.llen(key))
        return [r if isinstance(r, Exception) else int(r or 0) for r in results]

    async def scan_keys(self, pattern: str, *, count: int = 100) -> list[str]:
        async def run() -> list[str]:
            seen: dict[str, None] = {}
            async for key in self._redis.scan_iter(match=pattern, count=count):
                seen.setdefault(key, None)
            return list(seen)

        return await self._call("scan", pattern, run)

    async def execute(self, batch: WriteBatch) -> None:
        if not batch.ops:
            return

        async def run() -> list[Any]:
            async with self._redis.pipeline(transaction=False) as pipe:
                for op in batch.ops:
                    if op.command == "hset":
                        pipe.hset(op.key, mapping=op.args[0])
                    elif op.command == "sadd":
                        pipe.sadd(op.key, *op.args)
                    elif op.command == "srem":
                        pipe.srem(op.key, *op.args)
                    elif op.command == "delete":
                        pipe.delete(op.key)
                    elif op.command == "expire":
                        pipe.expire(op.key, op.args[0])
                    elif op.command == "rpush_capped":
                        value, cap = op.args
                        pipe.rpush(op.key, value)
                        pipe.ltrim(op.key, -cap, -1)
                    else:
                        raise ValueError(f"Unsupported batch command: {op.command}")
                return list(await pipe.execute(raise_on_error=False))

        results = await self._call("pipeline", batch.ops[0].key, run)
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            raise StorageError(
                f"{len(errors)} of {len(results)} pipelined writes failed: {errors[0]}",
                operation="pipeline",
                key=batch.ops[0].key,
            )
