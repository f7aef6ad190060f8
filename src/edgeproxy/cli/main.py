"""Command-line entrypoint running the gateway supervisor."""

from __future__ import annotations

import argparse
import asyncio
import os
from typing import Optional, Sequence

import structlog
import uvicorn

from ..cache import StaticAssetCache
from ..common.observability import configure_logging
from ..common.settings import GatewaySettings
from ..routing import RouteTable
from ..supervisor import WorkerSupervisor, worker_count

LOGGER = structlog.get_logger("edgeproxy.cli")

APP_FACTORY = "edgeproxy.gateway.app:create_app"

_FLAG_ENV = {
    "host": "EDGEPROXY_HOST",
    "port": "EDGEPROXY_PORT",
    "workers": "EDGEPROXY_MAX_WORKERS",
    "mode": "EDGEPROXY_MODE",
    "routes": "EDGEPROXY_ROUTES_FILE",
    "cache_dir": "EDGEPROXY_CACHE_DIR",
    "log_level": "EDGEPROXY_LOG_LEVEL",
}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the edgeproxy reverse-proxy gateway")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Listening port")
    parser.add_argument("--workers", type=int, help="Maximum number of worker processes")
    parser.add_argument("--mode", choices=["production", "development"], help="Caching is active only in production")
    parser.add_argument("--routes", help="YAML route table")
    parser.add_argument("--cache-dir", help="Static asset cache directory")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def apply_overrides(args: argparse.Namespace) -> None:
    """Export command-line flags as environment so spawned workers see them too."""
    for attr, env_name in _FLAG_ENV.items():
        value = getattr(args, attr, None)
        if value is not None:
            os.environ[env_name] = str(value)


def build_server_config(settings: GatewaySettings) -> uvicorn.Config:
    return uvicorn.Config(
        APP_FACTORY,
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=None,
        access_log=False,
        proxy_headers=False,
        server_header=False,
        date_header=False,
        lifespan="on",
    )


def prepare_cache(settings: GatewaySettings) -> StaticAssetCache:
    """Flush the cache in production before any worker starts serving."""
    cache = StaticAssetCache(settings.cache_dir, settings.cache_ttl_seconds)
    if settings.caching_enabled:
        cache.reset()
    else:
        cache.ensure_directory()
    return cache


async def run(argv: Optional[Sequence[str]] = None) -> None:
    apply_overrides(parse_args(argv))
    settings = GatewaySettings()
    configure_logging("edgeproxy.supervisor", settings.log_level)

    routes = RouteTable(settings.route_rules(), settings.default_origin_target)
    routes.log_table()
    prepare_cache(settings)

    workers = worker_count(settings.max_workers)
    LOGGER.info(
        "gateway_starting",
        mode=settings.mode.value,
        port=settings.port,
        workers=workers,
        admission_limit=settings.admission_max_requests,
        admission_window=settings.admission_window_seconds,
        effective_admission_limit=workers * settings.admission_max_requests,
    )
    supervisor = WorkerSupervisor(build_server_config(settings), workers)
    await supervisor.run()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
