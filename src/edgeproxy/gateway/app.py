"""Per-worker request pipeline: cache, admission control and prefix routing."""

from __future__ import annotations

import asyncio
import mimetypes
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace

from ..admission import AdmissionController, client_key_for
from ..cache import CacheHit, CacheWriter, StaticAssetCache, is_cacheable
from ..common.http_security import parse_networks, require_metrics_access, resolve_client_ip
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram, LabeledCounter
from ..common.observability import configure_logging, configure_tracing, current_trace_id, instrument_fastapi_app
from ..common.settings import GatewaySettings
from ..proxy import BackendUnavailable, BodyTap, ProxyDispatcher, build_client, raw_target
from ..routing import RouteTable

NO_STORE_HEADERS = {
    "cache-control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "pragma": "no-cache",
    "expires": "0",
}
BACKEND_ERROR_BODY = "Backend Fetch Error"
SERVER_ERROR_BODY = "Server Error"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeproxy_requests_total", "Requests handled by this worker"))
RESPONSE_STATUS_COUNTER = GLOBAL_REGISTRY.register(
    LabeledCounter("edgeproxy_responses_total", "status", "Responses sent, by status code")
)
SERVER_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeproxy_server_errors_total", "Requests that failed with an unhandled pipeline error")
)
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "edgeproxy_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
        description="Time to first byte of the gateway response",
    )
)
TRACER = trace.get_tracer("edgeproxy.gateway")


class GatewayState:
    def __init__(
        self,
        settings: GatewaySettings,
        cache: StaticAssetCache,
        admission: AdmissionController,
        routes: RouteTable,
        dispatcher: ProxyDispatcher,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.admission = admission
        self.routes = routes
        self.dispatcher = dispatcher
        self.overflow_origin = settings.overflow_origin_target
        self.trusted_proxies = parse_networks(settings.trusted_proxy_cidrs)
        self.logger = structlog.get_logger("edgeproxy.gateway").bind(mode=settings.mode.value)


def get_state(request: Request) -> GatewayState:
    return request.app.state.gateway  # type: ignore[attr-defined]


def apply_no_store(response: Response) -> None:
    for name, value in NO_STORE_HEADERS.items():
        response.headers[name] = value


def apply_public_cache(response: Response, max_age: int) -> None:
    response.headers["cache-control"] = f"public, max-age={max_age}"
    for name in ("pragma", "expires"):
        if name in response.headers:
            del response.headers[name]


def plain_error(status_code: int, body: str) -> PlainTextResponse:
    response = PlainTextResponse(body, status_code=status_code)
    apply_no_store(response)
    return response


def _storable(method: str, upstream: httpx.Response) -> bool:
    if method != "GET" or upstream.status_code != status.HTTP_200_OK:
        return False
    encoding = upstream.headers.get("content-encoding", "identity").strip().lower()
    return encoding in {"", "identity"}


def _cache_fill(writer: CacheWriter) -> BodyTap:
    async def tap(body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            async for chunk in body:
                await writer.write(chunk)
                yield chunk
        except BaseException:
            writer.abort()
            raise
        await writer.commit()

    return tap


def _serve_hit(hit: CacheHit, request: Request, max_age: int) -> Response:
    media_type = mimetypes.guess_type(request.url.path)[0] or "application/octet-stream"
    headers = {"content-length": str(hit.size), "x-cache": "HIT"}
    if request.method == "HEAD":
        hit.close()
        response: Response = Response(status_code=status.HTTP_200_OK, media_type=media_type, headers=headers)
    else:
        response = StreamingResponse(hit.iter_chunks(), media_type=media_type, headers=headers)
    apply_public_cache(response, max_age)
    return response


async def run_pipeline(request: Request, state: GatewayState) -> Response:
    settings = state.settings
    client_ip = resolve_client_ip(request, state.trusted_proxies)
    request.state.client_ip = client_ip

    path, query = raw_target(request)
    request_url = f"{path}?{query}" if query else path
    cacheable = settings.caching_enabled and is_cacheable(request_url)

    if cacheable and request.method in {"GET", "HEAD"}:
        hit = await state.cache.lookup(request_url)
        if hit is not None:
            return _serve_hit(hit, request, settings.cache_max_age)

    decision = state.admission.admit(client_key_for(client_ip))
    if not decision.allowed:
        response = await state.dispatcher.forward(
            request,
            state.overflow_origin,
            settings.overflow_path,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        )
        response.headers["retry-after"] = str(decision.retry_after)
        apply_no_store(response)
        if cacheable:
            response.headers["x-cache"] = "MISS"
        return response

    origin = state.routes.dispatch(path)
    upstream = await state.dispatcher.open(request, origin)
    if not cacheable:
        response = state.dispatcher.relay(upstream)
        apply_no_store(response)
        return response

    tap: Optional[BodyTap] = None
    if _storable(request.method, upstream):
        writer = state.cache.open_writer(request_url)
        if writer is not None:
            tap = _cache_fill(writer)
    response = state.dispatcher.relay(upstream, tap=tap)
    response.headers["x-cache"] = "MISS"
    if upstream.status_code < status.HTTP_400_BAD_REQUEST:
        apply_public_cache(response, settings.cache_max_age)
    else:
        apply_no_store(response)
    return response


async def _sweep_admission(state: GatewayState) -> None:
    interval = state.settings.admission_sweep_seconds
    while True:
        await asyncio.sleep(interval)
        state.admission.sweep()


def create_app(
    settings: Optional[GatewaySettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], float]] = None,
    monotonic: Optional[Callable[[], float]] = None,
) -> FastAPI:
    settings = settings or GatewaySettings()
    configure_logging("edgeproxy.worker", settings.log_level)
    configure_tracing(
        service_name="edgeproxy.worker",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    cache = StaticAssetCache(settings.cache_dir, settings.cache_ttl_seconds, clock=clock or time.time)
    cache.ensure_directory()
    admission = AdmissionController(
        settings.admission_max_requests,
        settings.admission_window_seconds,
        clock=monotonic or time.monotonic,
    )
    routes = RouteTable(settings.route_rules(), settings.default_origin_target)
    client = build_client(settings.upstream_timeout_seconds, transport=transport)
    state = GatewayState(settings, cache, admission, routes, ProxyDispatcher(client))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_sweep_admission(state))
        state.logger.info("worker_started", pid=os.getpid(), routes=len(routes.rules))
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            await client.aclose()
            state.logger.info("worker_stopped", pid=os.getpid())

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.gateway = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        response = await call_next(request)
        duration = time.perf_counter() - start
        LATENCY_HISTOGRAM.observe(duration)
        RESPONSE_STATUS_COUNTER.inc(response.status_code)

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
            "client": getattr(request.state, "client_ip", None),
            "cache": response.headers.get("x-cache"),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif response.status_code == status.HTTP_429_TOO_MANY_REQUESTS or duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    internal = settings.internal_prefix.rstrip("/")

    @app.get(f"{internal}/healthz")
    async def health_check(state: GatewayState = Depends(get_state)) -> JSONResponse:
        cache_status = state.cache.status()
        healthy = bool(cache_status["writable"]) or not state.settings.caching_enabled
        payload = {
            "status": "healthy" if healthy else "unhealthy",
            "pid": os.getpid(),
            "mode": state.settings.mode.value,
            "cache": cache_status,
            "admission_windows": len(state.admission),
        }
        code = status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(payload, status_code=code)

    @app.get(f"{internal}/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: GatewayState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_request(request: Request, state: GatewayState = Depends(get_state)) -> Response:
        with TRACER.start_as_current_span("gateway.proxy", attributes={"http.target": request.url.path}):
            try:
                return await run_pipeline(request, state)
            except BackendUnavailable as exc:
                state.logger.warning(
                    "backend_fetch_error",
                    origin=exc.origin.url,
                    path=request.url.path,
                    trace_id=current_trace_id(),
                )
                return plain_error(status.HTTP_503_SERVICE_UNAVAILABLE, BACKEND_ERROR_BODY)
            except Exception:  # noqa: BLE001
                SERVER_ERROR_COUNTER.inc()
                state.logger.exception(
                    "pipeline_error",
                    method=request.method,
                    path=request.url.path,
                    trace_id=current_trace_id(),
                )
                return plain_error(status.HTTP_500_INTERNAL_SERVER_ERROR, SERVER_ERROR_BODY)

    return app
