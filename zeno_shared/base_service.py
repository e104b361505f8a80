"""
Base service class for the Zeno gateway.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Any, Optional
import os
import time

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from zeno_shared.config import BaseConfig
from zeno_shared.errors import AccessDeniedError, GatewayError, RateLimitError
from zeno_shared.logging import configure_logging, get_logger, get_request_id
from zeno_shared.metrics import GatewayMetrics


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, config: BaseConfig, metrics: Optional[GatewayMetrics] = None):
        self.config = config
        self.service_name = config.service_name
        self.metrics = metrics or GatewayMetrics(self.service_name, version=config.version)

        configure_logging(self.service_name, config.log_level, json_output=config.log_json)
        self.logger = get_logger(f"{self.service_name}.service")
        self._start_time = time.time()

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description="Zeno edge gateway",
            version=self.config.version,
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url=None,
            openapi_url="/openapi.json" if self.config.env == "local" else None,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        await self.startup()
        try:
            yield
        finally:
            await self.shutdown()

    async def startup(self) -> None:
        """Start background work. Override in subclasses."""

    async def shutdown(self) -> None:
        """Stop background work and release resources. Override in subclasses."""

    def _setup_middleware(self):
        """Set up middleware."""

        if self.config.cors_origins:
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=self.config.cors_origins,
                allow_credentials=True,
                allow_methods=["GET", "POST", "OPTIONS"],
                allow_headers=["Content-Type", "Authorization"],
            )

        if self.config.allowed_hosts and "*" not in self.config.allowed_hosts:
            self.app.add_middleware(
                TrustedHostMiddleware,
                allowed_hosts=self.config.allowed_hosts,
            )

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
                return {
                    "service": self.service_name,
                    "status": "ok",
                    "uptime_seconds": round(self._get_uptime(), 3),
                    "dependencies": dependencies,
                    "version": self.config.version,
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                    }
                )

        @self.app.get("/metrics")
        async def metrics_endpoint(request: Request):
            """Prometheus metrics endpoint."""
            allowed = self.config.metrics_allowed_ips
            if allowed:
                peer = request.client.host if request.client else None
                if peer not in allowed:
                    raise AccessDeniedError("Access to metrics endpoint forbidden")

            content, content_type = self.metrics.render()
            return Response(content=content, media_type=content_type)

        @self.app.exception_handler(GatewayError)
        async def gateway_exception_handler(request: Request, exc: GatewayError):
            """Render gateway errors with their status code."""
            log = self.logger.warning if exc.status_code < 500 else self.logger.error
            log(
                "Request failed",
                code=exc.code,
                status_code=exc.status_code,
                path=request.url.path,
            )
            headers = {}
            if isinstance(exc, RateLimitError) and exc.retry_after is not None:
                headers["Retry-After"] = str(exc.retry_after)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump(),
                headers=headers,
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "request_id": get_request_id(),
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time
