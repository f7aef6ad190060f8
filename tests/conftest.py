from __future__ import annotations

from pathlib import Path
from typing import Callable

import httpx
import pytest

from edgeproxy.common.settings import GatewaySettings


class UpstreamRecorder:
    """httpx handler standing in for every backend origin."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.bodies: list[bytes] = []
        self._routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def on(self, host: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self._routes[host] = handler

    def calls_to(self, host: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.host == host]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(await request.aread())
        self.requests.append(request)
        handler = self._routes.get(request.url.host)
        if handler is None:
            return httpx.Response(200, text=f"{request.url.host} {request.url.path}")
        return handler(request)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest.fixture
def routes_file(tmp_path: Path) -> Path:
    path = tmp_path / "routes.yaml"
    path.write_text(
        """
routes:
  - prefixes: ["/api"]
    protocol: http
    host: a.internal
    port: 8080
  - prefixes: ["/"]
    protocol: http
    host: b.internal
    port: 80
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., GatewaySettings]:
    def _make(**overrides) -> GatewaySettings:
        values = {
            "cache_dir": tmp_path / "cache",
            "default_origin": "http://index.internal",
            "overflow_origin": "http://overflow.internal",
            "admission_max_requests": 100,
            "admission_window_seconds": 60.0,
            "cache_ttl_seconds": 3600.0,
            "mode": "production",
            "log_level": "WARNING",
        }
        values.update(overrides)
        return GatewaySettings(**values)

    return _make
