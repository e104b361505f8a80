"""
Edge gateway service.

Wires the backend route table, reverse proxy, rate limiter, forex cache and
(in HTTPS mode) the certificate manager into one FastAPI application.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from zeno_shared.base_service import BaseService
from zeno_shared.errors import ServiceUnavailableError
from zeno_shared.metrics import GatewayMetrics

from .certs import CertificateManager, ChallengeStore, register_challenge_route
from .config import GatewaySettings, get_settings
from .domain import InstrumentationMiddleware
from .forex import ForexCache, ForexSnapshot, ForexSource, OpenExchangeRatesClient
from .ratelimit import RateLimitMiddleware, TokenBucketRateLimiter
from .routing import BackendRegistry, ReverseProxy, build_default_routes, load_routes_file


class GatewayService(BaseService):
    """Edge gateway service implementation."""

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        *,
        metrics: Optional[GatewayMetrics] = None,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        registry: Optional[BackendRegistry] = None,
        forex_source: Optional[ForexSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        certificate_manager: Optional[CertificateManager] = None,
        challenge_store: Optional[ChallengeStore] = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        metrics = metrics or GatewayMetrics(settings.service_name, version=settings.version)

        self.rate_limiter = rate_limiter or TokenBucketRateLimiter(
            settings.rate_limit_requests,
            settings.rate_limit_window_seconds,
            burst=settings.rate_limit_burst,
            idle_seconds=settings.rate_limit_idle_seconds,
            sweep_interval=settings.rate_limit_sweep_seconds,
        )
        self.rate_limit_middleware = RateLimitMiddleware(
            self.rate_limiter,
            metrics,
            trust_forwarded_headers=settings.trust_forwarded_headers,
        )

        self.registry = registry or BackendRegistry(self._default_routes(settings))
        self.proxy = ReverseProxy(
            self.registry,
            self.rate_limit_middleware,
            metrics,
            timeout_seconds=settings.upstream_timeout_seconds,
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
            max_connections=settings.upstream_max_connections,
            max_body_bytes=settings.max_body_bytes,
            max_header_count=settings.max_header_count,
            max_header_bytes=settings.max_header_bytes,
            transport=transport,
        )

        app_id = settings.forex_app_id.get_secret_value()
        if forex_source is None and app_id:
            forex_source = OpenExchangeRatesClient(
                app_id,
                settings.forex_url,
                timeout=settings.forex_timeout_seconds,
                transport=transport,
            )
        self.forex_source = forex_source
        self.forex_cache = (
            ForexCache(forex_source, refresh_interval=settings.forex_refresh_seconds, metrics=metrics)
            if forex_source is not None
            else None
        )

        self.certificate_manager = certificate_manager
        self.challenge_store = challenge_store
        self._tasks: List[asyncio.Task] = []

        super().__init__(settings, metrics)

        if self.forex_cache is None:
            self.logger.warning("FOREX_APP_ID is empty, forex endpoints will return 503")
        self.logger.info("Gateway configured", backends=self.registry.names())

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    @staticmethod
    def _default_routes(settings: GatewaySettings):
        routes = build_default_routes(
            ankr_api_key=settings.ankr_api_key.get_secret_value(),
            blast_api_key=settings.blast_api_key.get_secret_value(),
            indexer_api_key=settings.indexer_api_key.get_secret_value(),
            ankr_base_url=settings.ankr_base_url,
            blast_chain_urls=settings.blast_chain_urls,
            indexer_url=settings.indexer_url,
        )
        if settings.routes_file is not None:
            routes.extend(load_routes_file(settings.routes_file))
        return routes

    def _setup_middleware(self):
        super()._setup_middleware()
        # Added last so it wraps host filtering and CORS as well.
        self.app.add_middleware(
            InstrumentationMiddleware,
            metrics=self.metrics,
            client_ip=self.rate_limit_middleware.get_client_id,
        )

    def _setup_routes(self):
        super()._setup_routes()

        @self.app.api_route("/rpc/{backend}", methods=["GET", "POST"])
        async def rpc_root(request: Request, backend: str):
            """Proxy to the root of an RPC backend."""
            return await self.proxy.handle_rpc(request, backend)

        @self.app.api_route("/rpc/{backend}/{path:path}", methods=["GET", "POST"])
        async def rpc(request: Request, backend: str, path: str):
            """Proxy to an RPC backend."""
            return await self.proxy.handle_rpc(request, backend, path)

        @self.app.api_route("/indexer", methods=["GET", "POST"])
        async def indexer_root(request: Request):
            return await self.proxy.handle_indexer(request)

        @self.app.api_route("/indexer/{path:path}", methods=["GET", "POST"])
        async def indexer(request: Request, path: str):
            """Proxy to the indexer backend."""
            return await self.proxy.handle_indexer(request, path)

        @self.app.get("/forex")
        async def forex(request: Request):
            """Normalized forex snapshot."""
            decision = self.rate_limit_middleware.check_request(request, route="forex")
            snapshot = self._forex_snapshot()
            return JSONResponse(content=snapshot.normalized(), headers=decision.headers())

        @self.app.get("/forex/raw")
        async def forex_raw(request: Request):
            """Provider payload as last fetched."""
            decision = self.rate_limit_middleware.check_request(request, route="forex")
            snapshot = self._forex_snapshot()
            return JSONResponse(content=dict(snapshot.raw), headers=decision.headers())

        if self.challenge_store is not None:
            register_challenge_route(self.app, self.challenge_store)

    def _forex_snapshot(self) -> ForexSnapshot:
        snapshot = self.forex_cache.current() if self.forex_cache is not None else None
        if snapshot is None:
            raise ServiceUnavailableError("Forex data not yet available")
        return snapshot

    async def startup(self) -> None:
        if self.forex_cache is not None:
            self._tasks.append(asyncio.create_task(self.forex_cache.run(), name="forex-refresh"))
        self._tasks.append(asyncio.create_task(self._sweep_rate_limiter(), name="rate-limit-sweep"))
        if self.certificate_manager is not None:
            self._tasks.append(asyncio.create_task(self.certificate_manager.run(), name="certificate-renewal"))
        self.logger.info("Gateway started", background_tasks=len(self._tasks))

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.proxy.close()
        close = getattr(self.forex_source, "close", None)
        if close is not None:
            await close()
        self.logger.info("Gateway stopped")

    async def _sweep_rate_limiter(self) -> None:
        while True:
            await asyncio.sleep(self.rate_limiter.sweep_interval)
            self.rate_limiter.sweep()
            self.metrics.set_rate_limit_buckets(len(self.rate_limiter))

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Report backend, forex, limiter and TLS status."""
        forex_status = (
            self.forex_cache.status() if self.forex_cache is not None else {"available": False, "configured": False}
        )
        tls_status = (
            self.certificate_manager.status() if self.certificate_manager is not None else {"enabled": False}
        )
        return {
            "backends": self.registry.names(),
            "forex": forex_status,
            "rate_limiter": self.rate_limiter.get_global_stats(),
            "tls": tls_status,
        }


def create_app(settings: Optional[GatewaySettings] = None, **kwargs) -> FastAPI:
    """Create FastAPI application."""
    service = GatewayService(settings, **kwargs)
    return service.app
