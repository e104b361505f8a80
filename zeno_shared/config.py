"""
Shared configuration management for the Zeno gateway.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ZENO_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    log_json: bool = Field(default=True)

    # Service identity
    service_name: str = Field(default="gateway")
    version: str = Field(default="1.0.0")

    # Listener
    host: str = Field(default="0.0.0.0")
    http_port: int = Field(default=3000, ge=1, le=65535)
    shutdown_grace_seconds: float = Field(default=30.0, gt=0)

    # Edge filtering
    allowed_hosts: List[str] = Field(default_factory=lambda: ["*"])
    cors_origins: List[str] = Field(default_factory=list)
    metrics_allowed_ips: List[str] = Field(default_factory=list)
