from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from meshdots.config import MeshDotsConfig
from meshdots.exceptions import StorageError
from meshdots.store.base import WriteBatch
from meshdots.store.redis import RedisStore


class _DummyPipeline:
    def __init__(self, results: list[Any]) -> None:
        self.commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.results = results
        self.raise_on_error: bool | None = None

    async def __aenter__(self) -> _DummyPipeline:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    def __getattr__(self, name: str) -> Any:
        def queue(*args: Any, **kwargs: Any) -> _DummyPipeline:
            self.commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self, raise_on_error: bool = True) -> list[Any]:
        self.raise_on_error = raise_on_error
        return self.results


class _DummyRedis:
    def __init__(self) -> None:
        self.pipelines: list[_DummyPipeline] = []
        self.pipeline_results: list[Any] = []
        self.transaction: bool | None = None
        self.closed = False
        self.fail = False

    def pipeline(self, transaction: bool = True) -> _DummyPipeline:
        self.transaction = transaction
        pipe = _DummyPipeline(self.pipeline_results)
        self.pipelines.append(pipe)
        return pipe

    async def ping(self) -> bool:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return True

    async def hgetall(self, key: str) -> dict[str, str]:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return {"longName": "Alice"}

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.last_set = (key, value, ex)
        return True

    async def delete(self, *keys: str) -> int:
        return len(keys)

    async def scan_iter(self, match: str, count: int) -> AsyncIterator[str]:
        for key in ("dots:1", "dots:2", "dots:1"):
            yield key

    async def aclose(self) -> None:
        self.closed = True


def _store() -> tuple[RedisStore, _DummyRedis]:
    client = _DummyRedis()
    return RedisStore(client), client  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_redis_errors_become_storage_errors() -> None:
    store, client = _store()
    client.fail = True

    with pytest.raises(StorageError) as excinfo:
        await store.hgetall("dots:1")

    assert excinfo.value.operation == "hgetall"
    assert excinfo.value.key == "dots:1"
    assert isinstance(excinfo.value.__cause__, RedisConnectionError)


@pytest.mark.asyncio
async def test_simple_commands() -> None:
    store, client = _store()

    assert await store.ping() is True
    assert await store.hgetall("dots:1") == {"longName": "Alice"}
    await store.set("cache", "{}", ttl_seconds=30)
    assert client.last_set == ("cache", "{}", 30)
    assert await store.delete() == 0
    assert await store.delete("a", "b") == 2


@pytest.mark.asyncio
async def test_scan_keys_deduplicates() -> None:
    store, _ = _store()

    assert await store.scan_keys("dots:*") == ["dots:1", "dots:2"]


@pytest.mark.asyncio
async def test_bulk_reads_keep_per_key_failures_in_place() -> None:
    store, client = _store()
    failure = ResponseError("WRONGTYPE")
    client.pipeline_results = [{"a": "1"}, failure, None]

    results = await store.hgetall_many(["k1", "k2", "k3"])

    assert results == [{"a": "1"}, failure, {}]
    assert client.transaction is False
    pipe = client.pipelines[-1]
    assert pipe.raise_on_error is False
    assert [command[0] for command in pipe.commands] == ["hgetall", "hgetall", "hgetall"]


@pytest.mark.asyncio
async def test_bulk_read_of_no_keys_skips_round_trip() -> None:
    store, client = _store()

    assert await store.lrange_many([], 0, -1) == []
    assert client.pipelines == []


@pytest.mark.asyncio
async def test_execute_translates_batch_commands() -> None:
    store, client = _store()
    client.pipeline_results = [1, 1, 1, 1]
    batch = WriteBatch().hset("dots:1", {"longName": "A"}).sadd("devices:active", "1").rpush_capped("L:1", "{}", 200)

    await store.execute(batch)

    commands = client.pipelines[-1].commands
    assert commands[0] == ("hset", ("dots:1",), {"mapping": {"longName": "A"}})
    assert commands[1] == ("sadd", ("devices:active", "1"), {})
    assert commands[2] == ("rpush", ("L:1", "{}"), {})
    assert commands[3] == ("ltrim", ("L:1", -200, -1), {})


@pytest.mark.asyncio
async def test_execute_raises_when_any_write_failed() -> None:
    store, client = _store()
    client.pipeline_results = [1, ResponseError("OOM")]

    with pytest.raises(StorageError, match="1 of 2 pipelined writes failed"):
        await store.execute(WriteBatch().sadd("a", "1").srem("b", "1"))


@pytest.mark.asyncio
async def test_empty_batch_is_not_sent() -> None:
    store, client = _store()

    await store.execute(WriteBatch())

    assert client.pipelines == []


@pytest.mark.asyncio
async def test_close() -> None:
    store, client = _store()

    await store.close()

    assert client.closed


def test_from_config_builds_client_from_url() -> None:
    store = RedisStore.from_config(MeshDotsConfig(redis_host="cache.local", redis_port=6380, redis_db=2))

    kwargs = store._redis.connection_pool.connection_kwargs
    assert kwargs["host"] == "cache.local"
    assert kwargs["port"] == 6380
    assert kwargs["db"] == 2
