"""Read-only HTTP query facade over the aggregation engine."""

from __future__ import annotations

import logging
import time
from typing import Any

from aiohttp import web

from meshdots import __version__
from meshdots.ids import to_numeric_id
from meshdots.models.category import QUERYABLE_CATEGORIES, Category
from meshdots.state.engine import AggregationEngine

_logger = logging.getLogger(__name__)

ENGINE_KEY: web.AppKey[AggregationEngine] = web.AppKey("engine", AggregationEngine)

_CATEGORY_NAMES = [category.value for category in QUERYABLE_CATEGORIES]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _engine(request: web.Request) -> AggregationEngine:
    return request.app[ENGINE_KEY]


def _error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def _category(name: str) -> Category | None:
    """Resolve a path segment to a category served by the facade."""
    try:
        category = Category(name)
    except ValueError:
        return None
    return category if category in QUERYABLE_CATEGORIES else None


def _limit(request: web.Request, default: int) -> int:
    raw = request.query.get("limit")
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text='{"error": "limit must be an integer"}', content_type="application/json"
        ) from exc
    return max(0, min(value, default))


async def handle_root(request: web.Request) -> web.Response:
    stats = await _engine(request).get_category_statistics()
    return web.json_response(
        {
            "name": "meshdots",
            "version": __version__,
            "timestamp": _now_ms(),
            "status": "running",
            "statistics": {
                "total_devices": sum(stat["deviceCount"] for stat in stats.values()),
                "total_messages": sum(stat["totalMessages"] for stat in stats.values()),
            },
            "portnum_types": _CATEGORY_NAMES,
        }
    )


async def handle_health(request: web.Request) -> web.Response:
    healthy = await _engine(request).ping()
    return web.json_response(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": _now_ms(),
            "services": {"redis": "ok" if healthy else "error"},
        },
        status=200 if healthy else 503,
    )


async def handle_stats(request: web.Request) -> web.Response:
    stats = await _engine(request).get_category_statistics()
    return web.json_response({"timestamp": _now_ms(), "data": stats})


async def handle_dots(request: web.Request) -> web.Response:
    started = time.monotonic()
    dots = await _engine(request).get_all_aggregated_state()
    elapsed_ms = int((time.monotonic() - started) * 1000)
    return web.json_response(
        {
            "data": {device_id: dot.to_api() for device_id, dot in dots.items()},
            "timestamp": _now_ms(),
            "response_time_ms": elapsed_ms,
            "device_count": len(dots),
        },
        headers={"Cache-Control": "public, max-age=30", "X-Device-Count": str(len(dots))},
    )


async def handle_dot(request: web.Request) -> web.Response:
    device_id = request.match_info["device_id"]
    if to_numeric_id(device_id) is None:
        return _error(400, "Invalid device ID", deviceId=device_id)
    dot = await _engine(request).get_aggregated_state(device_id)
    if dot is None:
        return _error(404, "Device not found", deviceId=device_id)
    return web.json_response({"device_id": device_id, "timestamp": _now_ms(), "data": dot.to_api()})


async def handle_map(request: web.Request) -> web.Response:
    started = time.monotonic()
    points = await _engine(request).get_minimal_map_view()
    elapsed_ms = int((time.monotonic() - started) * 1000)
    return web.json_response(
        {
            "data": {device_id: point.model_dump() for device_id, point in points.items()},
            "timestamp": _now_ms(),
            "response_time_ms": elapsed_ms,
            "device_count": len(points),
        },
        headers={"Cache-Control": "no-cache", "X-Device-Count": str(len(points))},
    )


async def handle_meshcore(request: web.Request) -> web.Response:
    dots = await _engine(request).get_all_meshcore_dots()
    return web.json_response(
        {
            "data": {public_key: dot.model_dump() for public_key, dot in dots.items()},
            "timestamp": _now_ms(),
            "device_count": len(dots),
        }
    )


async def handle_device_messages(request: web.Request) -> web.Response:
    name = request.match_info["category"]
    device_id = request.match_info["device_id"]
    category = _category(name)
    if category is None:
        return _error(400, "Invalid portnum name", validPortnums=_CATEGORY_NAMES)
    if to_numeric_id(device_id) is None:
        return _error(400, "Invalid device ID", deviceId=device_id)

    engine = _engine(request)
    messages = await engine.get_messages(
        category, device_id, _limit(request, engine.config.max_category_messages)
    )
    return web.json_response(
        {
            "portnum": category.value,
            "deviceId": device_id,
            "count": len(messages),
            "timestamp": _now_ms(),
            "data": messages,
        }
    )


async def handle_category_messages(request: web.Request) -> web.Response:
    name = request.match_info["category"]
    category = _category(name)
    if category is None:
        return _error(400, "Invalid portnum name", validPortnums=_CATEGORY_NAMES)

    messages = await _engine(request).get_all_messages(category)
    return web.json_response(
        {
            "portnum": category.value,
            "device_count": len(messages),
            "timestamp": _now_ms(),
            "data": messages,
        }
    )


def build_app(engine: AggregationEngine) -> web.Application:
    """Create the facade application bound to *engine*."""
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/", handle_root)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/stats", handle_stats)
    app.router.add_get("/dots", handle_dots)
    app.router.add_get("/dots/{device_id}", handle_dot)
    app.router.add_get("/map", handle_map)
    app.router.add_get("/meshcore", handle_meshcore)
    app.router.add_get("/portnum/{category}", handle_category_messages)
    app.router.add_get("/portnum/{category}/{device_id}", handle_device_messages)
    app.router.add_get("/{category:[A-Z_]+}:{device_id}", handle_device_messages)
    app.router.add_get("/{category:[A-Z_]+}", handle_category_messages)
    _logger.debug("Query facade routes registered")
    return app
