"""Configuration management using pydantic-settings.

Provides environment-based configuration with type safety and validation.
"""

from .settings import (
    BreakerSettings,
    CacheSettings,
    GatewaySettings,
    HttpSettings,
    LoggingSettings,
    PendingSettings,
    PoolSettings,
    RetrySettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "BreakerSettings",
    "CacheSettings",
    "GatewaySettings",
    "HttpSettings",
    "LoggingSettings",
    "PendingSettings",
    "PoolSettings",
    "RetrySettings",
    "clear_settings_cache",
    "get_settings",
]
