"""
Shared configuration management for the meter API cache gateway.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    log_json: bool = Field(default=True)

    # Backing store
    redis_url: str = Field(default="redis://localhost:6379/1")
    cache_backend: str = Field(default="redis")
    cache_prefix: str = Field(default="meter_api:")
    cache_default_ttl: int = Field(default=300)
    cache_socket_timeout: float = Field(default=5.0)

    # Cache policy
    cache_health_threshold: float = Field(default=50.0)
    cache_warmup_routes_file: Optional[str] = Field(default=None)

    # Upstream CRUD API
    upstream_api_url: str = Field(default="http://localhost:8080")
    upstream_timeout_seconds: float = Field(default=10.0)

    # Admin surface
    admin_prefix: str = Field(default="/api/cache")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
