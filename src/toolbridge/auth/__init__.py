"""Authentication schemes and the Auth Manager."""

from .config import ApiKeyAuth, AuthConfig, BearerAuth, NoAuth, OAuth2ClientCredentials
from .manager import AuthManager, CachedToken

__all__ = [
    "AuthConfig", "NoAuth", "ApiKeyAuth", "BearerAuth", "OAuth2ClientCredentials",
    "AuthManager", "CachedToken",
]
