"""The Tool Invocation Gateway: one value owning both roles and all state.

Composes the registry, auth manager, transport, resilience layer and both
router roles. Nothing is global: two gateways in one process share nothing.

Example:
    >>> settings = GatewaySettings(endpoints=[ServerEndpoint(id="jira", base_address="https://jira.example.com")])
    >>> async with Gateway(settings) as gw:
    ...     @gw.tool(description="Echo the input back")
    ...     def echo(text: str) -> str:
    ...         return text
    ...
    ...     await gw.discover("jira")
    ...     result = await gw.invoke("jira", "create_task", {"title": "Fix login"}, timeout=5)
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Self

import httpx

from toolbridge.auth import AuthManager
from toolbridge.core.models import InvocationRequest, InvocationResult, ServerEndpoint
from toolbridge.foundation.config import GatewaySettings, get_settings
from toolbridge.foundation.errors import AuthRejected, EndpointNotConfigured, JsonDict
from toolbridge.observability import get_logger
from toolbridge.registry import DiscoveryReport, ToolRegistry
from toolbridge.resilience import CircuitBreakers, ExponentialBackoff, ResilienceLayer, ResultCache, RetryPolicy
from toolbridge.router import Handler, InboundHandlerRegistry, OutboundInvoker, PendingInvocations
from toolbridge.transport import ConnectionPool, HttpTransport, Transport

log = get_logger("toolbridge.gateway")


class Gateway:
    """Bidirectional tool gateway.

    Args:
        settings: Configuration (default: loaded from the environment)
        transport: Replace HTTP with any Transport (e.g. ``StubTransport`` in tests)
        http_transport: httpx transport for the default HttpTransport's pool
            (``httpx.ASGITransport`` / ``httpx.MockTransport`` in tests)
        auth_client: httpx client the Auth Manager uses for token endpoints
    """

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        *,
        transport: Transport | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        auth_client: httpx.AsyncClient | None = None,
    ) -> None:
        s = self.settings = settings or get_settings()
        self.server_id = s.server_id
        self.endpoints: dict[str, ServerEndpoint] = {e.id: e for e in s.endpoints}

        self.registry = ToolRegistry(source=self)
        self.auth = AuthManager(auth_client)
        self.pool: ConnectionPool | None = None
        if transport is None:
            self.pool = ConnectionPool(
                max_connections=s.pool.max_connections,
                acquire_timeout=s.pool.acquire_timeout,
                idle_timeout=s.pool.idle_timeout,
                request_timeout=s.http.request_timeout,
                verify_ssl=s.http.verify_ssl,
                user_agent=s.http.user_agent,
                transport=http_transport,
            )
            transport = HttpTransport(self.pool)
        self.transport = transport

        self.breakers = CircuitBreakers(failure_threshold=s.breaker.failure_threshold, cooldown=s.breaker.cooldown)
        self.cache = ResultCache(s.cache.ttl, s.cache.max_entries) if s.cache.enabled else None
        retry = RetryPolicy(
            max_attempts=s.retry.max_attempts,
            backoff=ExponentialBackoff(
                base=s.retry.base_delay, max_delay=s.retry.max_delay,
                multiplier=s.retry.multiplier, jitter=s.retry.jitter,
            ),
        )
        self.resilience = ResilienceLayer(
            transport, retry=retry, breakers=self.breakers, cache=self.cache,
            attempt_timeout=s.http.request_timeout,
        )

        self.pending = PendingInvocations(ttl=s.pending.ttl, max_records=s.pending.max_records)
        self.inbound = InboundHandlerRegistry(self.registry, self.server_id, pending=self.pending)
        self.outbound = OutboundInvoker(
            self.registry, self.endpoints, self.auth, self.resilience, default_deadline=s.http.default_deadline,
        )
        self._janitor: asyncio.Task[None] | None = None

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    async def start(self, *, discover: bool = False) -> None:
        """Start background maintenance; optionally discover every configured endpoint."""
        if self._janitor is None:
            self._janitor = asyncio.create_task(self._run_janitor(), name=f"toolbridge-janitor-{self.server_id}")
        log.info("gateway.started", server_id=self.server_id, endpoints=sorted(self.endpoints))
        if discover:
            for server_id in list(self.endpoints):
                await self.discover(server_id)

    async def stop(self) -> None:
        if self._janitor is not None:
            self._janitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._janitor
            self._janitor = None
        await self.transport.aclose()
        await self.auth.aclose()
        log.info("gateway.stopped", server_id=self.server_id)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._janitor is not None and not self._janitor.done()

    async def maintain(self) -> None:
        """One maintenance sweep: reclaim idle connections, purge expired pending records."""
        if self.pool is not None:
            await self.pool.reclaim_idle()
        self.pending.purge_expired()

    async def _run_janitor(self) -> None:
        interval = self.settings.pool.reclaim_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.maintain()
            except Exception:  # noqa: BLE001 - janitor must outlive one bad sweep
                log.exception("gateway.maintenance_failed", server_id=self.server_id)

    # ─────────────────────────────────────────────────────────────────
    # Inbound role
    # ─────────────────────────────────────────────────────────────────

    def expose(self, name: str, handler: Handler, **kw: Any) -> Any:
        return self.inbound.expose(name, handler, **kw)

    def tool(self, func: Handler | None = None, **kw: Any) -> Any:
        return self.inbound.tool(func, **kw)

    def list_tools(self) -> list[JsonDict]:
        return self.inbound.list_tools()

    async def handle(self, request: InvocationRequest) -> InvocationResult:
        return await self.inbound.handle(request)

    # ─────────────────────────────────────────────────────────────────
    # Outbound role
    # ─────────────────────────────────────────────────────────────────

    def add_endpoint(self, endpoint: ServerEndpoint) -> None:
        """Add or replace a peer. Cached credentials for the id are dropped."""
        self.endpoints[endpoint.id] = endpoint
        self.auth.invalidate(endpoint.id)

    async def invoke(self, server_id: str, tool_name: str, params: dict[str, Any] | None = None, **kw: Any) -> InvocationResult:
        return await self.outbound.invoke(server_id, tool_name, params, **kw)

    async def discover(self, server_id: str) -> DiscoveryReport:
        return await self.registry.discover(server_id)

    async def fetch_tools(self, server_id: str) -> list[Any]:
        """ToolSource for the registry: authenticated list-tools against a peer."""
        if (endpoint := self.endpoints.get(server_id)) is None:
            raise EndpointNotConfigured(server_id)
        headers = await self.auth.headers_for(endpoint)
        try:
            return await self.transport.list_tools(endpoint, headers)
        except AuthRejected:
            self.auth.invalidate(server_id)
            raise

    # ─────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────

    def health(self) -> JsonDict:
        report: JsonDict = {
            "status": "ok",
            "server": self.server_id,
            "tools": len(self.inbound),
            "circuits": self.breakers.snapshot(),
            "pending": len(self.pending),
        }
        if self.cache is not None:
            report["cache"] = self.cache.stats()
        if self.pool is not None:
            report["pools"] = {sid: {"limit": st.limit, "in_use": st.in_use, "waiting": st.waiting}
                               for sid, st in self.pool.stats().items()}
        return report
