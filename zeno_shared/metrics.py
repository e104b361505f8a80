"""
Prometheus metrics for the Zeno gateway.

Each ``GatewayMetrics`` owns its own ``CollectorRegistry`` so tests and
multiple gateway instances in one process never share series.
"""

from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


class GatewayMetrics:
    """Centralized metrics registry for the gateway."""

    def __init__(self, service_name: str = "gateway", registry: Optional[CollectorRegistry] = None, version: str = "1.0.0"):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics(version)

    def _setup_metrics(self, version: str):
        """Set up the gateway series."""

        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": version
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "route", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "route"],
            registry=self.registry
        )

        self._metrics["http_requests_in_flight"] = Gauge(
            "http_requests_in_flight",
            "Requests currently being handled",
            registry=self.registry
        )

        # Proxy metrics
        self._metrics["rpc_requests_total"] = Counter(
            "rpc_requests_total",
            "Total RPC requests forwarded upstream",
            ["backend"],
            registry=self.registry
        )

        self._metrics["rpc_request_duration_seconds"] = Histogram(
            "rpc_request_duration_seconds",
            "RPC upstream call duration in seconds",
            ["backend"],
            registry=self.registry
        )

        self._metrics["indexer_requests_total"] = Counter(
            "indexer_requests_total",
            "Total indexer requests forwarded upstream",
            ["backend"],
            registry=self.registry
        )

        self._metrics["indexer_request_duration_seconds"] = Histogram(
            "indexer_request_duration_seconds",
            "Indexer upstream call duration in seconds",
            ["backend"],
            registry=self.registry
        )

        self._metrics["upstream_errors_total"] = Counter(
            "upstream_errors_total",
            "Upstream failures by backend and error type",
            ["backend", "error_type"],
            registry=self.registry
        )

        # Rate limiting
        self._metrics["rate_limit_hits_total"] = Counter(
            "rate_limit_hits_total",
            "Total rate limit hits",
            ["route"],
            registry=self.registry
        )

        self._metrics["rate_limit_buckets"] = Gauge(
            "rate_limit_buckets",
            "Client buckets currently tracked by the rate limiter",
            registry=self.registry
        )

        # Forex
        self._metrics["forex_updates_total"] = Counter(
            "forex_updates_total",
            "Forex refresh attempts by outcome",
            ["status"],
            registry=self.registry
        )

        self._metrics["forex_refresh_duration_seconds"] = Histogram(
            "forex_refresh_duration_seconds",
            "Forex refresh duration in seconds",
            registry=self.registry
        )

        # Certificates
        self._metrics["certificate_events_total"] = Counter(
            "certificate_events_total",
            "Certificate lifecycle events",
            ["domain", "event"],
            registry=self.registry
        )

        self._metrics["certificate_expiry_timestamp_seconds"] = Gauge(
            "certificate_expiry_timestamp_seconds",
            "Expiry of the installed certificate as a unix timestamp",
            ["domain"],
            registry=self.registry
        )

    def record_http_request(self, method: str, route: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            route=route,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            route=route
        ).observe(duration)

    @contextmanager
    def track_in_flight(self) -> Iterator[None]:
        """Count a request as in flight for the duration of the block."""
        gauge = self._metrics["http_requests_in_flight"]
        gauge.inc()
        try:
            yield
        finally:
            gauge.dec()

    def record_upstream_request(self, kind: str, backend: str, duration: float):
        """Record one forwarded call; ``kind`` is ``rpc`` or ``indexer``."""
        self._metrics[f"{kind}_requests_total"].labels(backend=backend).inc()
        self._metrics[f"{kind}_request_duration_seconds"].labels(backend=backend).observe(duration)

    def record_upstream_error(self, backend: str, error_type: str):
        """Record an upstream failure."""
        self._metrics["upstream_errors_total"].labels(backend=backend, error_type=error_type).inc()

    def record_rate_limit_hit(self, route: str):
        """Record a denied admission."""
        self._metrics["rate_limit_hits_total"].labels(route=route).inc()

    def set_rate_limit_buckets(self, count: int):
        """Publish the size of the bucket table."""
        self._metrics["rate_limit_buckets"].set(count)

    def record_forex_refresh(self, status: str, duration: float):
        """Record a forex refresh attempt."""
        self._metrics["forex_updates_total"].labels(status=status).inc()
        self._metrics["forex_refresh_duration_seconds"].observe(duration)

    def record_certificate_event(self, domain: str, event: str):
        """Record a certificate lifecycle event (issued, renewed, failed, ...)."""
        self._metrics["certificate_events_total"].labels(domain=domain, event=event).inc()

    def set_certificate_expiry(self, domain: str, expires_at: float):
        """Publish the expiry of the certificate currently served."""
        self._metrics["certificate_expiry_timestamp_seconds"].labels(domain=domain).set(expires_at)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read the current value of a sample (used by health and tests)."""
        return self.registry.get_sample_value(name, labels or {})

    def render(self) -> Tuple[bytes, str]:
        """Render all series in the Prometheus text exposition format."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
