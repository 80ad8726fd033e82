"""Service configuration for meshdots."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable
from typing import Any

from meshdots import _constants as const
from meshdots.exceptions import MeshDotsConfigError

_TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
_FALSY = frozenset({"0", "false", "no", "n", "off"})


def _parse_flag(raw: str) -> bool:
    word = raw.strip().lower()
    if word in _TRUTHY or word in _FALSY:
        return word in _TRUTHY
    raise ValueError(raw)


def _parse_topics(raw: str) -> tuple[str, ...]:
    topics = tuple(filter(None, (part.strip() for part in raw.split(","))))
    if not topics:
        raise ValueError(raw)
    return topics


# (variable, field, converter); converters raise ValueError on bad input.
_ENV_FIELDS: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    ("REDIS_URL", "redis_url", str),
    ("REDIS_HOST", "redis_host", str),
    ("REDIS_PORT", "redis_port", int),
    ("REDIS_DB", "redis_db", int),
    ("REDIS_PASSWORD", "redis_password", str),
    ("MESHDOTS_DEBOUNCE_MS", "debounce_ms", int),
    ("MESHDOTS_DUPLICATE_WINDOW_MS", "duplicate_window_ms", int),
    ("MESHDOTS_CACHE_TTL", "cache_ttl_seconds", int),
    ("MESHDOTS_MESHCORE_TTL", "meshcore_dot_ttl_seconds", int),
    ("MESHDOTS_PIPELINE_TIMEOUT", "pipeline_timeout_seconds", float),
    ("MESHDOTS_MQTT_ENABLED", "mqtt_enabled", _parse_flag),
    ("MESHDOTS_MQTT_HOST", "mqtt_host", str),
    ("MESHDOTS_MQTT_PORT", "mqtt_port", int),
    ("MESHDOTS_MQTT_USERNAME", "mqtt_username", str),
    ("MESHDOTS_MQTT_PASSWORD", "mqtt_password", str),
    ("MESHDOTS_MQTT_TOPICS", "mqtt_topics", _parse_topics),
    ("MESHDOTS_MQTT_KEEPALIVE", "mqtt_keepalive", int),
    ("MESHDOTS_HTTP_HOST", "http_host", str),
    ("MESHDOTS_HTTP_PORT", "http_port", int),
)


@dataclasses.dataclass(frozen=True)
class MeshDotsConfig:
    """Service configuration.

    Parameters
    ----------
    redis_url : str or None
        Full ``redis://`` URL. When omitted the URL is built from
        ``redis_host``, ``redis_port`` and ``redis_db``.
    redis_host : str
        Key-value store host.
    redis_port : int
        Key-value store port.
    redis_db : int
        Logical database index.
    redis_password : str or None
        Optional store password.
    debounce_ms : int
        Window during which an unchanged dot update is suppressed.
    duplicate_window_ms : int
        Window during which an identical category message is suppressed.
    max_category_messages : int
        Length cap of each per-category message list.
    cache_ttl_seconds : int
        Expiry of the derived bulk-view caches held in the store.
    index_cache_ttl_seconds : float
        Expiry of the in-process device-index cache.
    meshcore_dot_ttl_seconds : int
        Expiry of ``dots_meshcore:*`` records.
    pipeline_timeout_seconds : float
        Caller-side timeout raced against every pipelined bulk read.
    scan_batch_size : int
        ``COUNT`` hint for cursor-driven key scans.
    mqtt_enabled : bool
        Start the MeshCore MQTT listener with the service.
    mqtt_host, mqtt_port, mqtt_username, mqtt_password : str, int, str, str
        Broker connection details.
    mqtt_topics : tuple of str
        Topic filters carrying MeshCore packet envelopes.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    http_host, http_port : str, int
        Bind address of the query facade.
    """

    redis_url: str | None = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    debounce_ms: int = const.DEBOUNCE_MS
    duplicate_window_ms: int = const.DUPLICATE_WINDOW_MS
    max_category_messages: int = const.MAX_CATEGORY_MESSAGES
    cache_ttl_seconds: int = const.CACHE_TTL_SECONDS
    index_cache_ttl_seconds: float = const.INDEX_CACHE_TTL_SECONDS
    meshcore_dot_ttl_seconds: int = const.MESHCORE_DOT_TTL_SECONDS
    pipeline_timeout_seconds: float = const.PIPELINE_TIMEOUT_SECONDS
    scan_batch_size: int = const.SCAN_BATCH_SIZE
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_topics: tuple[str, ...] = ("meshcore/+/+/packets",)
    mqtt_keepalive: int = 60
    http_host: str = "0.0.0.0"  # noqa: S104
    http_port: int = 8080

    def __post_init__(self) -> None:
        positive = {
            "cache_ttl_seconds": self.cache_ttl_seconds,
            "index_cache_ttl_seconds": self.index_cache_ttl_seconds,
            "meshcore_dot_ttl_seconds": self.meshcore_dot_ttl_seconds,
            "pipeline_timeout_seconds": self.pipeline_timeout_seconds,
            "scan_batch_size": self.scan_batch_size,
            "max_category_messages": self.max_category_messages,
        }
        for name, value in positive.items():
            if value <= 0:
                raise MeshDotsConfigError(f"{name} must be positive, got {value}")
        if self.debounce_ms < 0 or self.duplicate_window_ms < 0:
            raise MeshDotsConfigError("debounce and duplicate windows must not be negative")

    @property
    def resolved_redis_url(self) -> str:
        """Store URL, built from host/port/db when ``redis_url`` is unset."""
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @classmethod
    def from_env(cls, **overrides: Any) -> MeshDotsConfig:
        """Create configuration from environment variables.

        Reads the ``REDIS_*`` variables used by the deployment and optional
        ``MESHDOTS_*`` tuning variables. Keyword arguments win over the
        environment; variables for overridden fields are not even parsed.
        """
        values: dict[str, Any] = {}
        for variable, field_name, convert in _ENV_FIELDS:
            raw = os.environ.get(variable)
            if raw is None or field_name in overrides:
                continue
            try:
                values[field_name] = convert(raw)
            except ValueError as exc:
                raise MeshDotsConfigError(f"{variable} has an invalid value: {raw!r}") from exc
        return cls(**{**values, **overrides})
