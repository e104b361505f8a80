"""
Gateway configuration.

All settings are read from the environment with the ``ZENO_`` prefix (or a
``.env`` file), e.g. ``ZENO_ANKR_API_KEY`` or ``ZENO_HTTPS_ENABLED``.
"""

from pathlib import Path
from typing import Dict, Optional

from pydantic import Field, SecretStr, model_validator

from zeno_shared.config import BaseConfig

from .routing.backends import BLAST_CHAIN_URLS


LETSENCRYPT_DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"


class GatewaySettings(BaseConfig):
    """Settings for the edge gateway."""

    # Upstream credentials
    ankr_api_key: SecretStr = Field(default=SecretStr(""))
    blast_api_key: SecretStr = Field(default=SecretStr(""))
    indexer_api_key: SecretStr = Field(default=SecretStr(""))

    # Upstream locations
    ankr_base_url: str = Field(default="https://rpc.ankr.com")
    blast_chain_urls: Dict[str, str] = Field(default_factory=lambda: dict(BLAST_CHAIN_URLS))
    indexer_url: str = Field(default="https://rpc.ankr.com/multichain")
    routes_file: Optional[Path] = Field(default=None)

    # Proxy limits
    upstream_timeout_seconds: float = Field(default=10.0, gt=0)
    upstream_connect_timeout_seconds: float = Field(default=5.0, gt=0)
    upstream_max_connections: int = Field(default=20, ge=1)
    max_body_bytes: int = Field(default=1_000_000, ge=1)
    max_header_count: int = Field(default=50, ge=1)
    max_header_bytes: int = Field(default=1024, ge=1)

    # Rate limiting
    rate_limit_requests: int = Field(default=100, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_burst: Optional[int] = Field(default=None, ge=1)
    rate_limit_idle_seconds: float = Field(default=600.0, gt=0)
    rate_limit_sweep_seconds: float = Field(default=30.0, gt=0)
    trust_forwarded_headers: bool = Field(default=False)

    # Forex
    forex_app_id: SecretStr = Field(default=SecretStr(""))
    forex_url: str = Field(default="https://openexchangerates.org/api/latest.json")
    forex_refresh_seconds: float = Field(default=3600.0, gt=0)
    forex_timeout_seconds: float = Field(default=10.0, gt=0)

    # TLS / ACME
    https_enabled: bool = Field(default=False)
    https_mandatory: bool = Field(default=False)
    https_port: int = Field(default=8443, ge=1, le=65535)
    domain: Optional[str] = Field(default=None)
    acme_email: Optional[str] = Field(default=None)
    acme_directory_url: str = Field(default=LETSENCRYPT_DIRECTORY_URL)
    cert_cache_dir: Path = Field(default=Path("./acme-cache"))
    renewal_check_seconds: float = Field(default=86400.0, gt=0)
    renew_before_days: int = Field(default=30, ge=1)
    acme_retry_base_seconds: float = Field(default=60.0, gt=0)
    acme_retry_max_seconds: float = Field(default=6 * 3600.0, gt=0)
    acme_initial_attempts: int = Field(default=5, ge=1)
    acme_order_timeout_seconds: float = Field(default=180.0, gt=0)

    @model_validator(mode="after")
    def _check_tls(self) -> "GatewaySettings":
        if self.https_enabled and not (self.domain or "").strip():
            raise ValueError("ZENO_DOMAIN must be set when HTTPS is enabled")
        if self.https_enabled and self.http_port == self.https_port:
            raise ValueError("HTTP and HTTPS ports must differ")
        return self

    @property
    def rate_limit_capacity(self) -> int:
        """Bucket size: the configured burst, or the per-window quota."""
        return self.rate_limit_burst or self.rate_limit_requests


def get_settings(**overrides) -> GatewaySettings:
    """Load settings from the environment, applying explicit overrides."""
    return GatewaySettings(**overrides)
