"""Request forwarding to backend origins over a pooled httpx client."""

from __future__ import annotations

from typing import AsyncIterator, Callable, Optional

import httpx
import structlog
from fastapi import Request
from starlette.responses import StreamingResponse

from .common.metrics import GLOBAL_REGISTRY, Counter
from .routing import Origin

LOGGER = structlog.get_logger("edgeproxy.proxy")

BACKEND_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeproxy_backend_errors_total", "Upstream requests that failed at the transport level")
)

# RFC 7230 section 6.1 plus the headers the proxy recomputes itself.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

BodyTap = Callable[[AsyncIterator[bytes]], AsyncIterator[bytes]]


class BackendUnavailable(Exception):
    """The origin could not be reached, timed out, or reset the connection."""

    def __init__(self, origin: Origin, cause: Exception) -> None:
        super().__init__(f"{origin.url}: {cause.__class__.__name__}")
        self.origin = origin
        self.cause = cause


def _strip_hop_by_hop(headers: httpx.Headers | list[tuple[bytes, bytes]]) -> list[tuple[str, str]]:
    items = headers.multi_items() if isinstance(headers, httpx.Headers) else [
        (key.decode("latin-1"), value.decode("latin-1")) for key, value in headers
    ]
    connection_tokens = {
        token.strip().lower()
        for key, value in items
        if key.lower() == "connection"
        for token in value.split(",")
    }
    return [
        (key, value)
        for key, value in items
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in connection_tokens
    ]


def raw_target(request: Request) -> tuple[str, str]:
    """Path and query exactly as the client sent them, percent-escapes intact."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return path or "/", query


def build_client(timeout: float, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    limits = httpx.Limits(max_connections=100, max_keepalive_connections=20)
    client = httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        follow_redirects=False,
        transport=transport,
    )
    # Forwarded requests carry only the client's own headers.
    for name in list(client.headers.keys()):
        del client.headers[name]
    return client


class ProxyDispatcher:
    """Forwards requests unmodified to an origin and streams the reply back.

    The ``Host`` header is passed through as sent by the client, so origins
    see the public host name rather than their own address.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def open(self, request: Request, origin: Origin, path: Optional[str] = None) -> httpx.Response:
        """Send ``request`` to ``origin`` and return the streaming upstream response.

        A ``path`` override replaces both the path and the query string.
        """
        if path is None:
            path, query = raw_target(request)
        else:
            query = ""
        url = origin.target(path)
        if query:
            url = f"{url}?{query}"

        headers = _strip_hop_by_hop(request.headers.raw)
        has_body = request.method not in {"GET", "HEAD", "OPTIONS"} or "content-length" in request.headers or (
            "transfer-encoding" in request.headers
        )
        upstream = self._client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if has_body else None,
        )
        try:
            return await self._client.send(upstream, stream=True)
        except httpx.TransportError as exc:
            BACKEND_ERROR_COUNTER.inc()
            LOGGER.warning("backend_unreachable", origin=origin.url, path=path, error=repr(exc))
            raise BackendUnavailable(origin, exc) from exc

    def relay(
        self,
        upstream: httpx.Response,
        *,
        status_code: Optional[int] = None,
        tap: Optional[BodyTap] = None,
    ) -> StreamingResponse:
        """Wrap an open upstream response for the client.

        ``status_code`` overrides the upstream status; ``tap`` wraps the raw
        body stream, which is how cache fills observe the bytes in flight.
        """
        response = StreamingResponse(
            _relay_body(upstream, tap),
            status_code=status_code or upstream.status_code,
        )
        response.raw_headers = [
            (key.lower().encode("latin-1"), value.encode("latin-1"))
            for key, value in _strip_hop_by_hop(upstream.headers)
        ]
        return response

    async def forward(
        self,
        request: Request,
        origin: Origin,
        path: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
    ) -> StreamingResponse:
        upstream = await self.open(request, origin, path)
        return self.relay(upstream, status_code=status_code)


async def _relay_body(upstream: httpx.Response, tap: Optional[BodyTap]) -> AsyncIterator[bytes]:
    try:
        body: AsyncIterator[bytes] = upstream.aiter_raw()
        if tap is not None:
            body = tap(body)
        async for chunk in body:
            yield chunk
    finally:
        await upstream.aclose()
