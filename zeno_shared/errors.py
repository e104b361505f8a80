"""
Shared error handling for the Zeno gateway.

Every error raised on a request path is a ``GatewayError``. The HTTP layer
renders it as an ``ErrorResponse`` carrying the error's status code; messages
are written for clients and never include upstream credentials or tracebacks.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from zeno_shared.logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class GatewayError(Exception):
    """Base exception for gateway errors."""

    status_code: int = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=get_request_id(),
            code=self.code,
            message=self.message,
            details=self.details,
        )


class AccessDeniedError(GatewayError):
    """Caller is not allowed to reach the resource."""

    status_code = 403

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("ACCESS_DENIED", message, details)


class RouteNotFoundError(GatewayError):
    """No backend route matches the request path."""

    status_code = 404

    def __init__(self, message: str = "Endpoint not configured", details: Optional[Dict[str, Any]] = None):
        super().__init__("ROUTE_NOT_FOUND", message, details)


class PayloadTooLargeError(GatewayError):
    """Request body exceeds the configured limit."""

    status_code = 413

    def __init__(self, limit: int):
        super().__init__(
            "PAYLOAD_TOO_LARGE",
            f"Request body too large (max {limit} bytes)",
            {"max_bytes": limit},
        )


class RateLimitError(GatewayError):
    """Rate limiting errors."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__("RATE_LIMIT_ERROR", message, details)
        self.retry_after = retry_after


class UpstreamError(GatewayError):
    """Upstream could not be reached or answered with a server error."""

    status_code = 502

    def __init__(self, backend: str, message: str = "Bad gateway", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_ERROR", message, {"backend": backend, **(details or {})})
        self.backend = backend


class UpstreamTimeoutError(UpstreamError):
    """Upstream did not answer within the route timeout."""

    status_code = 504

    def __init__(self, backend: str, message: str = "Upstream timed out"):
        super().__init__(backend, message)
        self.code = "UPSTREAM_TIMEOUT"


class ServiceUnavailableError(GatewayError):
    """A locally served resource is not available yet."""

    status_code = 503

    def __init__(self, message: str = "Service unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_UNAVAILABLE", message, details)


class CertificateError(GatewayError):
    """Certificate acquisition or loading failed."""

    def __init__(self, domain: str, message: str = "Certificate error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CERTIFICATE_ERROR", message, {"domain": domain, **(details or {})})
        self.domain = domain
