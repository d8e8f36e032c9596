"""Environment-based configuration using pydantic-settings.

Provides type-safe, validated configuration from environment variables
with sensible defaults. Supports .env files and nested configuration.

Example:
    >>> from toolbridge.foundation.config import get_settings
    >>> settings = get_settings()
    >>> settings.retry.max_attempts
    3
    >>> settings.breaker.cooldown
    60.0

    # Or with environment variables:
    # TOOLBRIDGE_RETRY_MAX_ATTEMPTS=5
    # TOOLBRIDGE_BREAKER_COOLDOWN=30
    # TOOLBRIDGE_ENDPOINTS='[{"id": "jira", "base_address": "https://tools.example.com"}]'
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, NonNegativeFloat, PositiveFloat, PositiveInt, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from toolbridge.core.models import ServerEndpoint


class RetrySettings(BaseSettings):
    """Retry policy for outbound calls."""

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_RETRY_", extra="ignore")

    max_attempts: Annotated[int, Field(ge=1, le=10)] = 3
    base_delay: NonNegativeFloat = Field(default=1.0, description="Delay before the first retry in seconds")
    max_delay: PositiveFloat = Field(default=30.0, description="Maximum delay in seconds")
    multiplier: PositiveFloat = Field(default=2.0, description="Exponential backoff base")
    jitter: Annotated[float, Field(ge=0.0, lt=1.0)] = 0.2


class BreakerSettings(BaseSettings):
    """Per-server circuit breaker thresholds."""

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_BREAKER_", extra="ignore")

    failure_threshold: PositiveInt = 5
    cooldown: PositiveFloat = Field(default=60.0, description="Seconds an open circuit fails fast")


class CacheSettings(BaseSettings):
    """Result cache for tools flagged cacheable."""

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_CACHE_", extra="ignore")

    enabled: bool = True
    ttl: PositiveFloat = Field(default=300.0, description="Default cache TTL in seconds")
    max_entries: PositiveInt = Field(default=1000, description="Max cache entries")


class PoolSettings(BaseSettings):
    """Per-server connection pool limits."""

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_POOL_", extra="ignore")

    max_connections: PositiveInt = 10
    acquire_timeout: PositiveFloat = Field(default=5.0, description="Max FIFO wait for a connection")
    idle_timeout: PositiveFloat = Field(default=60.0, description="Idle seconds before a client is reclaimed")
    reclaim_interval: PositiveFloat = Field(default=30.0, description="Janitor sweep interval")


class HttpSettings(BaseSettings):
    """HTTP client defaults."""

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_HTTP_", extra="ignore")

    request_timeout: PositiveFloat = Field(default=30.0, description="Per-attempt timeout")
    default_deadline: PositiveFloat = Field(default=30.0, description="Overall per-call deadline")
    verify_ssl: bool = True
    user_agent: str = "toolbridge/0.1"


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console", "none"] = "console"


class PendingSettings(BaseSettings):
    """Deferred (human-in-the-loop) invocation records."""

    model_config = SettingsConfigDict(env_prefix="TOOLBRIDGE_PENDING_", extra="ignore")

    ttl: PositiveFloat = Field(default=3600.0, description="Seconds before an uncompleted record expires")
    max_records: PositiveInt = 10_000


class GatewaySettings(BaseSettings):
    """Root settings for a toolbridge Gateway.

    Loads configuration from environment variables with TOOLBRIDGE_ prefix.
    Supports nested configuration and .env files.

    Example environment variables:
        TOOLBRIDGE_SERVER_ID=billing
        TOOLBRIDGE_RETRY_BASE_DELAY=0.5
        TOOLBRIDGE_POOL_MAX_CONNECTIONS=20
        TOOLBRIDGE_LOG_FORMAT=json
    """

    model_config = SettingsConfigDict(
        env_prefix="TOOLBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    server_id: Annotated[str, Field(min_length=1)] = "local"
    environment: Literal["development", "staging", "production"] = "development"

    retry: RetrySettings = Field(default_factory=RetrySettings)
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    pending: PendingSettings = Field(default_factory=PendingSettings)

    endpoints: list[ServerEndpoint] = Field(default_factory=list)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_env(cls, v: str) -> str:
        return v.lower() if isinstance(v, str) else v

    @field_validator("endpoints")
    @classmethod
    def _unique_endpoints(cls, v: list[ServerEndpoint]) -> list[ServerEndpoint]:
        ids = [e.id for e in v]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate endpoint ids: {sorted({i for i in ids if ids.count(i) > 1})}")
        return v

    @computed_field
    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> GatewaySettings:
    """Get the settings instance loaded from the environment (cached)."""
    return GatewaySettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing).

    After calling this, the next get_settings() call will
    reload configuration from environment.
    """
    get_settings.cache_clear()
