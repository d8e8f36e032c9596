"""Credential attachment for outbound requests.

Static schemes (API key, static bearer) are injected straight into the
request headers. Token schemes (refreshable bearer, OAuth2 client
credentials) are cached per server and renewed once 80% of their lifetime
has elapsed. Refresh is single-flight: concurrent callers for the same
server await one shared token request.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import httpx

from toolbridge.foundation.errors import AuthConfigInvalid, AuthRejected, RemoteApplicationError, classify_exception
from toolbridge.observability import get_logger

from .config import ApiKeyAuth, BearerAuth, NoAuth, OAuth2ClientCredentials

if TYPE_CHECKING:
    from toolbridge.core.models import InvocationRequest, ServerEndpoint

log = get_logger("toolbridge.auth")

DEFAULT_REFRESH_RATIO = 0.8


@dataclass(slots=True, frozen=True)
class CachedToken:
    """Access token with its lifetime; ``expires_at`` of None never expires."""

    value: str
    issued_at: float
    expires_at: float | None = None
    refresh_token: str | None = None

    def needs_refresh(self, now: float, ratio: float = DEFAULT_REFRESH_RATIO) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.issued_at + (self.expires_at - self.issued_at) * ratio


class AuthManager:
    """Attaches credentials per endpoint scheme and owns the token cache.

    Example:
        >>> auth = AuthManager()
        >>> await auth.attach(endpoint, request)  # request.headers now authenticated
        >>> auth.invalidate(endpoint.id)          # after the peer answered 401
    """

    __slots__ = ("_client", "_owns_client", "_tokens", "_refreshing", "_ratio", "_clock", "_timeout")

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        refresh_ratio: float = DEFAULT_REFRESH_RATIO,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._tokens: dict[str, CachedToken] = {}
        self._refreshing: dict[str, asyncio.Task[CachedToken]] = {}
        self._ratio = refresh_ratio
        self._clock = clock
        self._timeout = timeout

    async def attach(self, endpoint: ServerEndpoint, request: InvocationRequest) -> None:
        """Mutate ``request.headers`` with the endpoint's credentials.

        Raises:
            AuthConfigInvalid: A secret the scheme requires is missing.
            AuthRejected: The token endpoint refused our credentials.
        """
        request.headers.update(await self.headers_for(endpoint))

    async def headers_for(self, endpoint: ServerEndpoint) -> dict[str, str]:
        match endpoint.auth:
            case NoAuth():
                return {}
            case ApiKeyAuth(key=None):
                raise _missing(endpoint.id, "api_key", "key")
            case ApiKeyAuth(key=key, header_name=header):
                return {header: key.get_secret_value()}
            case BearerAuth(refresh_url=None, token=None):
                raise _missing(endpoint.id, "bearer", "token")
            case BearerAuth(refresh_url=None, token=token):
                return {"Authorization": f"Bearer {token.get_secret_value()}"}
            case BearerAuth(refresh_token=None):
                raise _missing(endpoint.id, "bearer", "refresh_token")
            case OAuth2ClientCredentials(client_id=None) | OAuth2ClientCredentials(client_secret=None):
                raise _missing(endpoint.id, "oauth2_client_credentials", "client_id/client_secret")
            case BearerAuth() | OAuth2ClientCredentials():
                return {"Authorization": f"Bearer {await self.token(endpoint)}"}
            case other:
                raise AuthConfigInvalid(f"Unsupported auth scheme: {other!r}", details={"server_id": endpoint.id})

    async def token(self, endpoint: ServerEndpoint) -> str:
        """Current access token for a token-based endpoint, refreshing if due."""
        sid = endpoint.id
        cached = self._tokens.get(sid)
        if cached is None and isinstance(endpoint.auth, BearerAuth) and endpoint.auth.token is not None:
            # Configured initial token is used until the peer rejects it
            cached = self._tokens[sid] = CachedToken(endpoint.auth.token.get_secret_value(), self._clock())
        if cached is not None and not cached.needs_refresh(self._clock(), self._ratio):
            return cached.value

        task = self._refreshing.get(sid)
        if task is None:
            task = asyncio.ensure_future(self._refresh(endpoint, cached))
            self._refreshing[sid] = task
            task.add_done_callback(lambda t, sid=sid: self._refresh_done(sid, t))
        # Shielded so one cancelled caller does not abort the refresh for the others
        return (await asyncio.shield(task)).value

    def invalidate(self, server_id: str) -> bool:
        """Drop the cached token so the next attach fetches a fresh one."""
        return self._tokens.pop(server_id, None) is not None

    def cached(self, server_id: str) -> CachedToken | None:
        return self._tokens.get(server_id)

    async def aclose(self) -> None:
        for task in self._refreshing.values():
            task.cancel()
        self._refreshing.clear()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ─────────────────────────────────────────────────────────────────
    # Token endpoint
    # ─────────────────────────────────────────────────────────────────

    def _refresh_done(self, server_id: str, task: asyncio.Task[CachedToken]) -> None:
        if self._refreshing.get(server_id) is task:
            del self._refreshing[server_id]
        if not task.cancelled() and task.exception() is None:
            self._tokens[server_id] = task.result()

    def _grant(self, endpoint: ServerEndpoint, cached: CachedToken | None) -> tuple[str, dict[str, str]]:
        match endpoint.auth:
            case OAuth2ClientCredentials() as cfg:
                form = {"grant_type": "client_credentials", "client_id": cfg.client_id or "",
                        "client_secret": cfg.client_secret.get_secret_value() if cfg.client_secret else ""}
                if cfg.scope:
                    form["scope"] = cfg.scope
                if cfg.audience:
                    form["audience"] = cfg.audience
                return cfg.token_url, form
            case BearerAuth(refresh_url=str(url), refresh_token=rt) if rt is not None:
                # Prefer a rotated refresh token from the last response
                refresh = (cached.refresh_token if cached and cached.refresh_token else None) or rt.get_secret_value()
                return url, {"grant_type": "refresh_token", "refresh_token": refresh}
        raise AuthConfigInvalid(f"Endpoint '{endpoint.id}' has no token grant", details={"server_id": endpoint.id})

    async def _refresh(self, endpoint: ServerEndpoint, cached: CachedToken | None) -> CachedToken:
        url, form = self._grant(endpoint, cached)
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            resp = await self._client.post(url, data=form, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise classify_exception(e) from e

        if resp.status_code in (400, 401, 403):
            raise AuthRejected(
                f"Token endpoint rejected credentials for '{endpoint.id}' (HTTP {resp.status_code})",
                details={"server_id": endpoint.id, "status": resp.status_code},
            )
        if resp.status_code >= 400:
            raise RemoteApplicationError(
                f"Token endpoint error for '{endpoint.id}' (HTTP {resp.status_code})",
                status=resp.status_code, transient=resp.status_code >= 500, details={"server_id": endpoint.id},
            )
        try:
            body = resp.json()
        except ValueError as e:
            raise AuthRejected(f"Token endpoint returned non-JSON body for '{endpoint.id}'") from e
        if not isinstance(body, dict) or not isinstance(access := body.get("access_token"), str) or not access:
            raise AuthRejected(f"Token response for '{endpoint.id}' has no access_token",
                               details={"server_id": endpoint.id})

        now = self._clock()
        expires_in = body.get("expires_in")
        token = CachedToken(
            value=access,
            issued_at=now,
            expires_at=now + float(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else None,
            refresh_token=body.get("refresh_token") if isinstance(body.get("refresh_token"), str) else None,
        )
        log.info("auth.token_refreshed", server_id=endpoint.id, scheme=endpoint.auth.scheme, expires_in=expires_in)
        return token


def _missing(server_id: str, scheme: str, field: str) -> AuthConfigInvalid:
    return AuthConfigInvalid(
        f"Endpoint '{server_id}' uses {scheme} auth but '{field}' is not configured",
        details={"server_id": server_id, "scheme": scheme, "missing": field},
    )
