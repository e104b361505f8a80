"""
Reverse proxy core.

``ReverseProxy`` resolves the backend for a request, applies the rate
limiter, injects the backend credential and streams the upstream response
back to the client. Each route owns its own ``httpx.AsyncClient`` so a slow
or broken provider cannot exhaust a pool used by the others.
"""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Dict, List, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from zeno_shared.errors import (
    PayloadTooLargeError,
    RouteNotFoundError,
    UpstreamError,
    UpstreamTimeoutError,
)
from zeno_shared.logging import get_logger
from zeno_shared.metrics import GatewayMetrics

from ..ratelimit import RateLimitMiddleware
from .backends import BackendRegistry, BackendRoute, CredentialPlacement


HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Never forwarded upstream: recomputed by httpx, or client credentials.
_REQUEST_DROP = HOP_BY_HOP_HEADERS | {"host", "content-length", "authorization"}
_RESPONSE_DROP = HOP_BY_HOP_HEADERS | {"content-length"}


async def _replay(content: bytes) -> AsyncIterator[bytes]:
    yield content


def _connection_tokens(headers) -> set:
    value = headers.get("connection", "")
    return {token.strip().lower() for token in value.split(",") if token.strip()}


class ReverseProxy:
    """Forwards matched requests to their backend."""

    def __init__(
        self,
        registry: BackendRegistry,
        rate_limit: RateLimitMiddleware,
        metrics: GatewayMetrics,
        *,
        timeout_seconds: float = 10.0,
        connect_timeout_seconds: float = 5.0,
        max_connections: int = 20,
        max_body_bytes: int = 1_000_000,
        max_header_count: int = 50,
        max_header_bytes: int = 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.registry = registry
        self.rate_limit = rate_limit
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds
        self.connect_timeout_seconds = connect_timeout_seconds
        self.max_connections = max_connections
        self.max_body_bytes = max_body_bytes
        self.max_header_count = max_header_count
        self.max_header_bytes = max_header_bytes
        self.logger = get_logger("gateway.proxy")
        self._transport = transport
        self._clients: Dict[str, httpx.AsyncClient] = {
            route.name: self._build_client(route) for route in registry
        }

    def _build_client(self, route: BackendRoute) -> httpx.AsyncClient:
        timeout = route.timeout_seconds or self.timeout_seconds
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, self.connect_timeout_seconds)),
            limits=httpx.Limits(
                max_connections=self.max_connections,
                max_keepalive_connections=self.max_connections,
            ),
            transport=self._transport,
            follow_redirects=False,
        )

    async def close(self) -> None:
        """Close every backend client."""
        for client in self._clients.values():
            await client.aclose()

    async def handle_rpc(self, request: Request, backend: str, path: str = "") -> StreamingResponse:
        """Proxy ``/rpc/{backend}/{path}``."""
        route = self.registry.resolve(backend)
        if route is None:
            raise RouteNotFoundError(details={"backend": backend})
        return await self.handle(request, route, path)

    async def handle_indexer(self, request: Request, path: str = "") -> StreamingResponse:
        """Proxy ``/indexer/{path}``."""
        route = self.registry.indexer()
        if route is None:
            raise RouteNotFoundError(details={"backend": "indexer"})
        return await self.handle(request, route, path)

    async def handle(self, request: Request, route: BackendRoute, suffix: str) -> StreamingResponse:
        """Rate limit, forward and stream one request."""
        url = route.build_url(suffix)
        if url is None:
            raise RouteNotFoundError(details={"backend": route.name, "path": suffix})

        family = route.kind.metric_family
        decision = self.rate_limit.check_request(request, route=family)

        body = await self._read_body(request)
        client = self._clients[route.name]
        upstream_request = client.build_request(
            request.method,
            url,
            headers=self._upstream_headers(request, route),
            params=self._upstream_params(request, route),
            content=body,
        )

        self.logger.info("Proxying request", backend=route.name, method=request.method, path=suffix)
        total_timeout = route.timeout_seconds or self.timeout_seconds
        started = time.perf_counter()
        try:
            upstream = await asyncio.wait_for(client.send(upstream_request, stream=True), timeout=total_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self._record_failure(route, family, started, "timeout", exc)
            raise UpstreamTimeoutError(route.name)
        except httpx.RequestError as exc:
            self._record_failure(route, family, started, type(exc).__name__, exc)
            raise UpstreamError(route.name)

        self.metrics.record_upstream_request(family, route.name, time.perf_counter() - started)

        if upstream.status_code >= 500:
            await upstream.aclose()
            self.metrics.record_upstream_error(route.name, "status_5xx")
            self.logger.warning(
                "Upstream server error",
                backend=route.name,
                upstream_status=upstream.status_code,
            )
            raise UpstreamError(route.name, details={"upstream_status": upstream.status_code})

        # Responses httpx already read (e.g. from a mock transport) cannot be re-streamed;
        # their content is decoded, so it goes out without the content-encoding header.
        decoded = upstream.is_stream_consumed
        stream = _replay(upstream.content) if decoded else upstream.aiter_raw()
        response = StreamingResponse(
            stream,
            status_code=upstream.status_code,
            headers=decision.headers(),
            background=BackgroundTask(upstream.aclose),
        )
        for name, value in self._response_headers(upstream.headers, route, decoded=decoded):
            response.headers.append(name, value)
        return response

    def _record_failure(self, route: BackendRoute, family: str, started: float, error_type: str, exc: Exception):
        self.metrics.record_upstream_request(family, route.name, time.perf_counter() - started)
        self.metrics.record_upstream_error(route.name, error_type)
        self.logger.warning(
            "Upstream request failed",
            backend=route.name,
            error_type=error_type,
            error=str(exc) or type(exc).__name__,
        )

    async def _read_body(self, request: Request) -> bytes:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_body_bytes:
            raise PayloadTooLargeError(self.max_body_bytes)

        chunks: List[bytes] = []
        size = 0
        async for chunk in request.stream():
            size += len(chunk)
            if size > self.max_body_bytes:
                raise PayloadTooLargeError(self.max_body_bytes)
            chunks.append(chunk)
        return b"".join(chunks)

    def _upstream_headers(self, request: Request, route: BackendRoute) -> List[Tuple[str, str]]:
        dropped = _REQUEST_DROP | _connection_tokens(request.headers)
        if route.credential is not None and route.credential.placement is CredentialPlacement.HEADER:
            dropped = dropped | {route.credential.name.lower()}

        headers: List[Tuple[str, str]] = []
        for name, value in request.headers.items():
            if name.lower() in dropped:
                continue
            if len(value) > self.max_header_bytes:
                continue
            if len(headers) >= self.max_header_count:
                break
            headers.append((name, value))

        headers.extend(route.credential_headers().items())
        return headers

    def _upstream_params(self, request: Request, route: BackendRoute) -> List[Tuple[str, str]]:
        blocked = None
        if route.credential is not None and route.credential.placement is CredentialPlacement.QUERY:
            blocked = route.credential.name
        params = [(key, value) for key, value in request.query_params.multi_items() if key != blocked]
        params.extend(route.credential_params().items())
        return params

    def _response_headers(
        self, upstream_headers: httpx.Headers, route: BackendRoute, *, decoded: bool = False
    ) -> List[Tuple[str, str]]:
        dropped = _RESPONSE_DROP | _connection_tokens(upstream_headers)
        if decoded:
            dropped = dropped | {"content-encoding"}
        headers: List[Tuple[str, str]] = []
        for name, value in upstream_headers.multi_items():
            lowered = name.lower()
            if lowered in dropped:
                continue
            if lowered == "location" and route.exposes_credential(value):
                self.logger.warning("Dropped upstream redirect carrying the credential", backend=route.name)
                continue
            headers.append((name, value))
        return headers
