"""
Shared configuration management for the backlog privilege services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden from the environment with the
    ``PRIVILEGES_`` prefix, e.g. ``PRIVILEGES_STORAGE_BACKEND=postgres``.
    """

    model_config = SettingsConfigDict(
        env_prefix="PRIVILEGES_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )
    
    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    
    # Storage
    storage_backend: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/privileges", description="PostgreSQL 15 or later")
    
    # Privilege cache (off unless the host opts in)
    redis_url: str = Field(default="redis://localhost:6379/0")
    privilege_cache_enabled: bool = Field(default=False)
    privilege_cache_ttl_seconds: int = Field(default=60, ge=1)
    
    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: Optional[str] = Field(default="http://localhost:4318/v1/traces")
    enable_console_tracing: bool = Field(default=False)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""
    
    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
