"""Outbound role: invoke tools exposed by remote peers.

    invoke → registry (lookup, version check, validate)
           → auth manager (attach credentials)
           → resilience layer (cache → breaker → retry around transport)
           → InvocationResult

Nothing raises past ``invoke``: every failure is normalized into the
result's ErrorEnvelope.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Mapping
from typing import Any

from toolbridge.auth import AuthManager
from toolbridge.core.models import Failure, InvocationRequest, InvocationResult, ServerEndpoint, Success, new_request_id
from toolbridge.foundation.errors import (
    AuthRejected,
    EndpointNotConfigured,
    GatewayError,
    TransportTimeout,
    normalize,
)
from toolbridge.observability import get_logger, log_context
from toolbridge.registry import ToolRegistry
from toolbridge.resilience import ResilienceLayer

log = get_logger("toolbridge.outbound")


class OutboundInvoker:
    """Calls remote tools through auth and resilience.

    Holds no per-request state beyond the set of request ids currently in
    flight, which guarantees an id is never reused while a call is running.

    Example:
        >>> result = await invoker.invoke("jira", "create_task", {"title": "Fix login"}, timeout=5)
        >>> result.ok, result.data
        (True, {'id': 'T-1'})
    """

    __slots__ = ("_registry", "_endpoints", "_auth", "_resilience", "_default_deadline", "_in_flight", "_lock")

    def __init__(
        self,
        registry: ToolRegistry,
        endpoints: Mapping[str, ServerEndpoint],
        auth: AuthManager,
        resilience: ResilienceLayer,
        *,
        default_deadline: float = 30.0,
    ) -> None:
        self._registry = registry
        self._endpoints = endpoints
        self._auth = auth
        self._resilience = resilience
        self._default_deadline = default_deadline
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def endpoint(self, server_id: str) -> ServerEndpoint:
        if (endpoint := self._endpoints.get(server_id)) is None:
            raise EndpointNotConfigured(server_id)
        return endpoint

    async def invoke(
        self,
        server_id: str,
        tool_name: str,
        params: dict[str, Any] | None = None,
        *,
        deadline: float | None = None,
        timeout: float | None = None,
        schema_version: int | None = None,
        request_id: str | None = None,
    ) -> InvocationResult:
        """Invoke ``tool_name`` on ``server_id``.

        Args:
            deadline: Absolute ``time.monotonic()`` deadline (wins over ``timeout``)
            timeout: Relative budget in seconds (default: configured deadline)
            schema_version: Pin the schema version the params were built for
            request_id: Caller-supplied id; must not be in flight already

        Returns:
            InvocationResult; failures carry an ErrorEnvelope, never an exception.
        """
        start = time.perf_counter()
        if deadline is None:
            deadline = time.monotonic() + (timeout if timeout is not None else self._default_deadline)
        request = InvocationRequest(
            tool_name=tool_name,
            server_id=server_id,
            params=dict(params or {}),
            deadline=deadline,
            request_id=request_id or new_request_id(),
            schema_version=schema_version,
        )

        with log_context(request_id=request.request_id, server_id=server_id, tool=tool_name, direction="outbound"):
            cached = False
            try:
                self._claim(request.request_id)
            except GatewayError as e:
                return InvocationResult(request.request_id, Failure(e.to_envelope()), time.perf_counter() - start)
            try:
                data, cached = await self._call(request)
                outcome: Success[Any] | Failure = Success(data, cached=cached)
            except Exception as e:  # noqa: BLE001 - normalized into the result
                outcome = Failure(normalize(e))
            finally:
                self._release(request.request_id)

            latency = time.perf_counter() - start
            if isinstance(outcome, Failure):
                log.warning("invoke.completed", ok=False, code=outcome.error.code.value,
                            latency_ms=round(latency * 1000, 2))
            else:
                log.info("invoke.completed", ok=True, cached=cached, latency_ms=round(latency * 1000, 2))
        return InvocationResult(request.request_id, outcome, latency)

    async def _call(self, request: InvocationRequest) -> tuple[Any, bool]:
        endpoint = self.endpoint(request.server_id)
        descriptor = self._registry.check_version(request.server_id, request.tool_name, request.schema_version)
        self._registry.validate(request.server_id, request.tool_name, request.params)

        if (remaining := request.remaining()) <= 0:
            raise TransportTimeout("Deadline passed before the call was sent")
        try:
            async with asyncio.timeout(remaining):
                await self._auth.attach(endpoint, request)
        except TimeoutError:
            raise TransportTimeout(f"Deadline passed while obtaining credentials for '{endpoint.id}'") from None

        try:
            return await self._resilience.call(endpoint, request, descriptor)
        except AuthRejected:
            # Cached token is stale or revoked; the next call fetches a new one
            self._auth.invalidate(endpoint.id)
            raise

    def _claim(self, request_id: str) -> None:
        with self._lock:
            if request_id in self._in_flight:
                raise GatewayError(f"Request id '{request_id}' is already in flight",
                                   details={"request_id": request_id})
            self._in_flight.add(request_id)

    def _release(self, request_id: str) -> None:
        with self._lock:
            self._in_flight.discard(request_id)
