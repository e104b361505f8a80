"""
Request instrumentation middleware for the Gateway.
"""

import time
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from zeno_shared.logging import clear_context, get_logger, set_client_ip, set_request_id
from zeno_shared.metrics import GatewayMetrics

REQUEST_ID_HEADER = "X-Request-ID"

_ROUTE_PREFIXES = (
    ("/rpc", "rpc"),
    ("/indexer", "indexer"),
    ("/forex", "forex"),
    ("/.well-known/acme-challenge", "acme"),
)


def classify_route(path: str) -> str:
    """Bounded route label for ``path``."""
    if path == "/health":
        return "health"
    if path == "/metrics":
        return "metrics"
    for prefix, label in _ROUTE_PREFIXES:
        if path == prefix or path.startswith(prefix + "/"):
            return label
    return "other"


class InstrumentationMiddleware(BaseHTTPMiddleware):
    """Counts, times and tags every request, including rejected ones."""

    def __init__(
        self,
        app: ASGIApp,
        metrics: GatewayMetrics,
        client_ip: Optional[Callable[[Request], str]] = None,
    ):
        super().__init__(app)
        self.metrics = metrics
        self.client_ip = client_ip
        self.logger = get_logger("gateway.instrumentation")

    async def dispatch(self, request: Request, call_next):
        incoming_id = request.headers.get(REQUEST_ID_HEADER)
        request_id = set_request_id(incoming_id[:128] if incoming_id else None)
        if self.client_ip is not None:
            set_client_ip(self.client_ip(request))
        else:
            set_client_ip(request.client.host if request.client else None)

        route = classify_route(request.url.path)
        start_time = time.perf_counter()
        try:
            with self.metrics.track_in_flight():
                try:
                    response = await call_next(request)
                except Exception:
                    self.metrics.record_http_request(
                        request.method, route, 500, time.perf_counter() - start_time
                    )
                    raise

                # Time to response start; streamed bodies continue past this point.
                duration = time.perf_counter() - start_time
                self.metrics.record_http_request(request.method, route, response.status_code, duration)
                self.logger.info(
                    "Request handled",
                    method=request.method,
                    path=request.url.path,
                    route=route,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                )
                response.headers[REQUEST_ID_HEADER] = request_id
                return response
        finally:
            clear_context()
