"""
Shared configuration management for the event backbone services.
"""

from typing import Dict, List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_maintenance_services() -> Dict[str, str]:
    return {
        "core": "http://localhost:4001",
        "identity": "http://localhost:4002",
        "job": "http://localhost:4003",
        "resume": "http://localhost:4004",
    }


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="BACKBONE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Event store
    redis_url: str = "redis://localhost:6379/0"
    event_store_backend: str = "memory"
    event_store_prefix: str = "backbone"

    # Delivery runtime
    delivery_max_attempts: int = Field(default=5, ge=1)
    delivery_base_delay: float = Field(default=1.0, ge=0)
    delivery_max_delay: float = Field(default=60.0, ge=0)
    delivery_backoff_strategy: str = "exponential"
    delivery_jitter: bool = True
    delivery_concurrency: int = Field(default=1, ge=1)

    # Token verification
    jwks_cache_ttl: float = Field(default=3600.0, gt=0)
    jwks_fetch_timeout: float = Field(default=10.0, gt=0)
    frontend_authority_url: Optional[str] = None
    allowed_issuers: List[str] = Field(default_factory=list)
    token_algorithms: List[str] = Field(default_factory=lambda: ["RS256"])
    token_leeway: int = 0

    # Admin
    admin_api_key: Optional[SecretStr] = None
    maintenance_services: Dict[str, str] = Field(default_factory=_default_maintenance_services)
    maintenance_timeout: float = 30.0

    # Observability
    enable_tracing: bool = False
    otlp_endpoint: Optional[str] = None


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
