"""
Shared configuration management for the permission services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: str = Field(default="info")


class AuthzConfig(BaseConfig):
    """Permission resolution settings."""

    service_name: str = Field(default="permissions")

    # Cache
    cache_backend: str = Field(default="memory", pattern="^(memory|redis|none)$")
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_key_prefix: str = Field(default="rbac")
    cache_ttl_seconds: int = Field(default=1800, ge=1)
    cache_timeout_seconds: float = Field(default=0.5, gt=0)

    # Entity store
    store_timeout_seconds: float = Field(default=2.0, gt=0)
    max_hierarchy_depth: int = Field(default=64, ge=1)

    # Circuit breaker around the entity store
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_recovery_seconds: float = Field(default=30.0, ge=0)


def get_config(service_name: Optional[str] = None, **overrides) -> AuthzConfig:
    """Get configuration for the permission service."""
    if service_name is not None:
        overrides["service_name"] = service_name
    return AuthzConfig(**overrides)
