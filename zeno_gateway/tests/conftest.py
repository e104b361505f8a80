"""
Shared fixtures for gateway tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from zeno_gateway.app.config import GatewaySettings
from zeno_gateway.app.main import GatewayService
from zeno_shared.metrics import GatewayMetrics


class FakeUpstream:
    """Records forwarded requests and answers with a configurable responder.

    The responder may be a coroutine function; ``MockTransport`` awaits it.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responder: Callable[[httpx.Request], Any] = (
            lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x1"})
        )

    def handler(self, request: httpx.Request) -> Any:
        self.requests.append(request)
        return self.responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeForexSource:
    """Forex source returning queued payloads or raising queued errors."""

    def __init__(self, *results: Any):
        self.results = list(results)
        self.calls = 0

    async def fetch(self) -> Dict[str, Any]:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def forex_payload():
    """Payload shaped like Open Exchange Rates ``latest.json``."""
    return {
        "disclaimer": "Usage subject to terms",
        "license": "https://openexchangerates.org/license",
        "timestamp": 1700000000,
        "base": "USD",
        "rates": {"EUR": 0.92, "GBP": 0.79, "JPY": 149.5},
    }


@pytest.fixture
def forex_source_factory():
    """``FakeForexSource`` constructor."""
    return FakeForexSource


@pytest.fixture
def upstream():
    """Fake upstream provider."""
    return FakeUpstream()


@pytest.fixture
def make_settings(tmp_path):
    """Settings factory that ignores the process environment file."""

    def _make(**overrides) -> GatewaySettings:
        values = {
            "ankr_api_key": "ankr-secret",
            "blast_api_key": "blast-secret",
            "indexer_api_key": "indexer-secret",
            "cert_cache_dir": tmp_path / "acme-cache",
            "log_json": False,
        }
        values.update(overrides)
        return GatewaySettings(_env_file=None, **values)

    return _make


@pytest.fixture
def make_gateway(make_settings, upstream):
    """Build a ``GatewayService`` whose upstream calls hit ``upstream``."""

    def _make(*, forex_source=None, rate_limiter=None, registry=None, **overrides) -> GatewayService:
        return GatewayService(
            make_settings(**overrides),
            metrics=GatewayMetrics("gateway"),
            rate_limiter=rate_limiter,
            registry=registry,
            forex_source=forex_source,
            transport=upstream.transport,
        )

    return _make


@pytest.fixture
def cert_factory():
    """Create a self-signed certificate bundle valid for ``days`` from ``now``."""

    def _make(domain: str, days: float, now: Optional[datetime] = None):
        now = now or datetime.now(timezone.utc)
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=60))
            .not_valid_after(now + timedelta(days=days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(key, hashes.SHA256())
        )
        cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cert_pem, key_pem

    return _make
