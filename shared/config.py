"""
Shared configuration management for the Billing Gateway.
"""

from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FailureMode(str, Enum):
    """Behaviour of the rate limiter when its counter store is unreachable."""
    OPEN = "open"      # admit and degrade
    CLOSED = "closed"  # deny with 503


class StoreBackend(str, Enum):
    """Counter store implementations."""
    MEMORY = "memory"
    REDIS = "redis"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_backend: StoreBackend = Field(default=StoreBackend.MEMORY)
    # No default; set GATEWAY_RATE_LIMIT_FAILURE_MODE per deployment.
    rate_limit_failure_mode: FailureMode
    rate_limit_store_timeout_ms: int = Field(default=200, gt=0)
    rate_limits_file: Optional[str] = Field(default=None)
    rate_limit_reaper_interval_seconds: float = Field(default=30.0, gt=0)
    rate_limit_key_prefix: str = Field(default="ratelimit")

    # Client address resolution. Enable only behind a proxy that overwrites
    # CF-Connecting-IP, X-Real-IP and X-Forwarded-For; otherwise clients pick
    # their own per-IP quota key.
    trust_proxy_headers: bool = Field(default=False)

    @property
    def rate_limit_store_timeout(self) -> float:
        """Store call timeout in seconds."""
        return self.rate_limit_store_timeout_ms / 1000.0


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service.

    Values not passed in ``overrides`` are read from ``GATEWAY_*`` environment
    variables or the ``.env`` file.
    """
    return ServiceConfig(service_name=service_name, port=port, **overrides)
