"""Per-server connection pooling.

Each server gets one ``httpx.AsyncClient`` whose own connection limits match
the server's ``max_connections``, plus an ``asyncio.Semaphore`` that admits
callers in arrival order. A caller that cannot get a slot within
``acquire_timeout`` fails with PoolExhausted instead of queueing forever.

Clients idle past ``idle_timeout`` are closed by ``reclaim_idle()``; the
Gateway runs it periodically from its janitor task.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable

import httpx

from toolbridge.core.models import ServerEndpoint
from toolbridge.foundation.errors import PoolExhausted
from toolbridge.observability import get_logger

log = get_logger("toolbridge.pool")


@dataclass(slots=True)
class _ServerPool:
    endpoint: ServerEndpoint
    client: httpx.AsyncClient
    slots: asyncio.Semaphore
    limit: int
    last_used: float
    in_use: int = 0
    waiting: int = 0

    @property
    def idle(self) -> bool:
        return self.in_use == 0 and self.waiting == 0


@dataclass(slots=True)
class PoolStats:
    server_id: str
    limit: int
    in_use: int
    waiting: int
    idle_for: float = field(default=0.0)


class ConnectionPool:
    """Leases per-server HTTP clients with bounded, FIFO admission.

    Example:
        >>> pool = ConnectionPool(acquire_timeout=2.0)
        >>> async with pool.open(endpoint) as client:
        ...     resp = await client.get("/tools")
        >>> await pool.close_all()
    """

    def __init__(
        self,
        *,
        max_connections: int = 10,
        acquire_timeout: float = 5.0,
        idle_timeout: float = 60.0,
        request_timeout: float = 30.0,
        verify_ssl: bool = True,
        user_agent: str = "toolbridge",
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_limit = max_connections
        self._acquire_timeout = acquire_timeout
        self._idle_timeout = idle_timeout
        self._request_timeout = request_timeout
        self._verify = verify_ssl
        self._user_agent = user_agent
        self._transport = transport
        self._clock = clock
        self._pools: dict[str, _ServerPool] = {}
        self._closed = False

    def _limit_for(self, endpoint: ServerEndpoint) -> int:
        # An endpoint's explicit limit wins over the pool-wide default
        if "max_connections" in endpoint.model_fields_set:
            return endpoint.max_connections
        return self._default_limit

    async def _pool_for(self, endpoint: ServerEndpoint) -> _ServerPool:
        current = self._pools.get(endpoint.id)
        if current is not None and (current.endpoint == endpoint or not current.idle):
            return current
        limit = self._limit_for(endpoint)
        client = httpx.AsyncClient(
            base_url=endpoint.base_address,
            limits=httpx.Limits(
                max_connections=limit, max_keepalive_connections=limit, keepalive_expiry=self._idle_timeout,
            ),
            timeout=endpoint.request_timeout or self._request_timeout,
            verify=self._verify,
            headers={"User-Agent": self._user_agent, "Accept": "application/json"},
            transport=self._transport,
        )
        pool = self._pools[endpoint.id] = _ServerPool(
            endpoint, client, asyncio.Semaphore(limit), limit, self._clock(),
        )
        log.debug("pool.created", server_id=endpoint.id, limit=limit)
        if current is not None:
            # Endpoint reconfigured while idle: the new client is already in place
            await current.client.aclose()
            log.debug("pool.replaced", server_id=endpoint.id)
        return pool

    @asynccontextmanager
    async def open(self, endpoint: ServerEndpoint, *, timeout: float | None = None) -> AsyncIterator[httpx.AsyncClient]:
        """Lease a connection to ``endpoint`` for the duration of the block.

        Raises:
            PoolExhausted: No slot freed up within the acquire timeout.
        """
        if self._closed:
            raise PoolExhausted("Connection pool is closed", details={"server_id": endpoint.id})
        pool = await self._pool_for(endpoint)
        wait = self._acquire_timeout if timeout is None else min(timeout, self._acquire_timeout)
        pool.waiting += 1
        try:
            await asyncio.wait_for(pool.slots.acquire(), timeout=wait)
        except TimeoutError:
            raise PoolExhausted(
                f"No connection to '{endpoint.id}' available within {wait:.2f}s "
                f"({pool.limit} in use)",
                details={"server_id": endpoint.id, "limit": pool.limit, "waited": wait},
            ) from None
        finally:
            pool.waiting -= 1

        pool.in_use += 1
        try:
            yield pool.client
        finally:
            pool.in_use -= 1
            pool.last_used = self._clock()
            pool.slots.release()

    async def reclaim_idle(self) -> int:
        """Close clients unused for longer than ``idle_timeout``. Returns how many."""
        now = self._clock()
        stale = [sid for sid, p in self._pools.items() if p.idle and now - p.last_used >= self._idle_timeout]
        for sid in stale:
            pool = self._pools.pop(sid)
            await pool.client.aclose()
            log.info("pool.reclaimed", server_id=sid, idle_for=round(now - pool.last_used, 3))
        return len(stale)

    async def close_all(self) -> None:
        self._closed = True
        pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            await pool.client.aclose()

    def stats(self) -> dict[str, PoolStats]:
        now = self._clock()
        return {
            sid: PoolStats(sid, p.limit, p.in_use, p.waiting, 0.0 if p.in_use else round(now - p.last_used, 3))
            for sid, p in self._pools.items()
        }

    def __contains__(self, server_id: object) -> bool:
        return server_id in self._pools

    def __len__(self) -> int:
        return len(self._pools)
