"""
Shared configuration management for the Access Gateway.
"""

from enum import Enum
from typing import List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FailurePolicy(str, Enum):
    """What a component does when its backing store is unavailable."""
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # External stores
    redis_url: str = "redis://localhost:6379/0"
    postgres_dsn: str = "postgres://localhost:5432/access"
    counter_store_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    revocation_store_backend: str = Field(default="memory", pattern="^(memory|postgres)$")
    store_timeout_seconds: float = 0.5

    # External identity collaborator
    identity_service_url: str = "http://localhost:8010"
    identity_service_timeout: float = 5.0

    # Observability
    enable_tracing: bool = False
    otel_exporter: Optional[str] = None
    enable_console_tracing: bool = False

    # Tokens
    jwt_algorithm: str = "HS256"
    jwt_allowed_algorithms: List[str] = ["HS256"]
    jwt_signing_key: SecretStr = SecretStr("change-me-in-production")
    jwt_verification_key: Optional[str] = None  # PEM public key for RS*/ES* algorithms
    jwt_issuer: str = "access-gateway"
    jwt_audience: str = "access-api"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 14 * 24 * 3600
    session_sweep_interval_seconds: int = 3600

    # Refresh cookie
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/auth"
    refresh_cookie_secure: bool = True

    # Rate limiting
    rate_limits_file: Optional[str] = None
    rate_limit_failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    trust_proxy_headers: bool = False  # Set True if behind a reverse proxy

    @field_validator("jwt_allowed_algorithms")
    @classmethod
    def _pin_algorithms(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("jwt_allowed_algorithms must not be empty")
        if any(alg.lower() == "none" for alg in value):
            raise ValueError("unsigned tokens ('none') are never accepted")
        return value


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
