#!/usr/bin/env python3
"""Run the meshdots query facade (and the MeshCore MQTT listener when enabled).

Configuration comes from the environment, see ``MeshDotsConfig.from_env``:
- REDIS_URL or REDIS_HOST / REDIS_PORT / REDIS_DB / REDIS_PASSWORD
- MESHDOTS_HTTP_HOST / MESHDOTS_HTTP_PORT
- MESHDOTS_MQTT_ENABLED, MESHDOTS_MQTT_HOST, MESHDOTS_MQTT_TOPICS, ...
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from aiohttp import web

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from meshdots.api import build_app  # noqa: E402
from meshdots.config import MeshDotsConfig  # noqa: E402
from meshdots.exceptions import MeshDotsConfigError  # noqa: E402
from meshdots.service import MeshDotsService  # noqa: E402

_LOG = logging.getLogger("meshdots.serve")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Serve aggregated mesh device state over HTTP.",
    )
    parser.add_argument("--host", default=None, help="Bind address (overrides MESHDOTS_HTTP_HOST).")
    parser.add_argument("--port", type=int, default=None, help="Bind port (overrides MESHDOTS_HTTP_PORT).")
    parser.add_argument(
        "--mqtt",
        action="store_true",
        help="Start the MeshCore MQTT listener regardless of MESHDOTS_MQTT_ENABLED.",
    )
    parser.add_argument(
        "--rebuild-index",
        action="store_true",
        help="Rebuild the active-device index from the stored dots before serving.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


async def _serve(config: MeshDotsConfig, *, rebuild_index: bool) -> None:
    async with MeshDotsService(config) as service:
        if not await service.engine.ping():
            _LOG.warning("Store is not reachable at %s; serving degraded results", config.resolved_redis_url)
        if rebuild_index:
            ids = await service.engine.rebuild_device_index()
            _LOG.info("Device index holds %d devices", len(ids))

        runner = web.AppRunner(build_app(service.engine))
        await runner.setup()
        site = web.TCPSite(runner, config.http_host, config.http_port)
        await site.start()
        _LOG.info("Listening on http://%s:%s", config.http_host, config.http_port)
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, object] = {}
    if args.host is not None:
        overrides["http_host"] = args.host
    if args.port is not None:
        overrides["http_port"] = args.port
    if args.mqtt:
        overrides["mqtt_enabled"] = True

    try:
        config = MeshDotsConfig.from_env(**overrides)
    except MeshDotsConfigError as exc:
        print(f"[serve] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        asyncio.run(_serve(config, rebuild_index=args.rebuild_index))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
