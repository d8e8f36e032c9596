"""Resilience composition around a transport.

    cache lookup → breaker check → retry loop around send → cache store

A cache hit skips the breaker and the network entirely. The breaker is
consulted once per call and told the call's final outcome, so one call
exhausting its retries counts as one failure.
"""

from __future__ import annotations

from typing import Any

from toolbridge.core.models import InvocationRequest, ServerEndpoint, ToolDescriptor
from toolbridge.foundation.errors import GatewayError
from toolbridge.transport import Transport

from .breaker import CircuitBreakers
from .cache import MISS, ResultCache, make_key
from .retry import RetryPolicy, execute_with_retry


class ResilienceLayer:
    """Cache, circuit breaker and retry wrapped around ``Transport.send``."""

    __slots__ = ("transport", "retry", "breakers", "cache", "attempt_timeout")

    def __init__(
        self,
        transport: Transport,
        *,
        retry: RetryPolicy | None = None,
        breakers: CircuitBreakers | None = None,
        cache: ResultCache | None = None,
        attempt_timeout: float | None = None,
    ) -> None:
        self.transport = transport
        self.retry = retry if retry is not None else RetryPolicy()
        self.breakers = breakers if breakers is not None else CircuitBreakers()
        self.cache = cache
        self.attempt_timeout = attempt_timeout

    async def call(
        self, endpoint: ServerEndpoint, request: InvocationRequest, descriptor: ToolDescriptor | None = None,
    ) -> tuple[Any, bool]:
        """Send ``request`` to ``endpoint``. Returns ``(data, served_from_cache)``.

        Raises:
            CircuitOpen: Server is failing fast; no retry budget consumed.
            GatewayError: Final error from the retry loop.
        """
        key: str | None = None
        if self.cache is not None and descriptor is not None and descriptor.cacheable:
            key = make_key(endpoint.id, request.tool_name, request.params)
            if (hit := self.cache.get(key)) is not MISS:
                return hit, True

        breaker = self.breakers.get(endpoint.id)
        breaker.acquire()
        try:
            data = await execute_with_retry(
                lambda: self.transport.send(endpoint, request),
                self.retry,
                deadline=request.deadline,
                attempt_timeout=endpoint.request_timeout or self.attempt_timeout,
                label=f"{endpoint.id}/{request.tool_name}",
            )
        except GatewayError as e:
            breaker.record(e)
            raise
        except BaseException:
            # Cancelled: free a half-open trial without judging the server
            breaker.release()
            raise
        breaker.record_success()

        if key is not None and self.cache is not None:
            self.cache.set(key, data, descriptor.cache_ttl if descriptor else None)
        return data, False

