"""Authentication schemes (discriminated union for config loading).

Secrets are stored as SecretStr to prevent accidental logging/exposure and
are masked in JSON serialization. A secret may be left unset in config; the
Auth Manager rejects such an endpoint with AuthConfigInvalid at attach time.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, SecretStr, Tag, field_serializer


def _mask(v: SecretStr | None) -> str | None:
    if v is None:
        return None
    secret = v.get_secret_value()
    return f"{secret[:4]}..." if len(secret) > 8 else "***"


class NoAuth(BaseModel):
    """No authentication."""

    model_config = ConfigDict(frozen=True, extra="forbid", revalidate_instances="never")
    scheme: Literal["none"] = "none"


class ApiKeyAuth(BaseModel):
    """Static API key injected into a request header."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True, revalidate_instances="never")
    scheme: Literal["api_key"] = "api_key"
    key: SecretStr | None = Field(default=None, description="API key value")
    header_name: str = Field(
        default="X-API-Key",
        pattern=r"^[A-Za-z][A-Za-z0-9-]*$",
        description="HTTP header name for the key",
    )

    @field_serializer("key", when_used="json")
    def _mask_key(self, v: SecretStr | None) -> str | None:
        return _mask(v)


class BearerAuth(BaseModel):
    """Bearer token, static or refreshable.

    Static when only ``token`` is set. Refreshable when ``refresh_url`` and
    ``refresh_token`` are set: the token is obtained with a refresh_token
    grant and renewed before it expires.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", revalidate_instances="never")
    scheme: Literal["bearer"] = "bearer"
    token: SecretStr | None = None
    refresh_url: str | None = None
    refresh_token: SecretStr | None = None

    @property
    def refreshable(self) -> bool:
        return self.refresh_url is not None

    @field_serializer("token", "refresh_token", when_used="json")
    def _mask_tokens(self, v: SecretStr | None) -> str | None:
        return _mask(v)


class OAuth2ClientCredentials(BaseModel):
    """OAuth2 client-credentials grant; tokens cached and refreshed early."""

    model_config = ConfigDict(frozen=True, extra="forbid", revalidate_instances="never")
    scheme: Literal["oauth2_client_credentials"] = "oauth2_client_credentials"
    token_url: str
    client_id: str | None = None
    client_secret: SecretStr | None = None
    scope: str | None = None
    audience: str | None = None

    @field_serializer("client_secret", when_used="json")
    def _mask_secret(self, v: SecretStr | None) -> str | None:
        return _mask(v)


def _scheme_of(v: object) -> str:
    if isinstance(v, dict):
        return str(v.get("scheme", "none"))
    return getattr(v, "scheme", "none")


AuthConfig = Annotated[
    Union[
        Annotated[NoAuth, Tag("none")],
        Annotated[ApiKeyAuth, Tag("api_key")],
        Annotated[BearerAuth, Tag("bearer")],
        Annotated[OAuth2ClientCredentials, Tag("oauth2_client_credentials")],
    ],
    Discriminator(_scheme_of),
]
