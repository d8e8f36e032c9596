"""HTTP transport adapter.

Speaks the gateway wire protocol over JSON/HTTP:

    GET  /tools            -> {"server": id, "tools": [...]}
    POST /tools/{name}     -> {"result": data} | {"error": {code, message}}

Responses are mapped onto the typed taxonomy: timeouts and network failures
become transport errors, 401/403 become AuthRejected, 5xx become transient
RemoteApplicationErrors, and error bodies are rebuilt with ``error_from_wire``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
import orjson

from toolbridge.core.models import InvocationRequest, ServerEndpoint
from toolbridge.foundation.errors import (
    AuthRejected,
    RemoteApplicationError,
    ToolNotFound,
    classify_exception,
    error_from_wire,
)

from .pool import ConnectionPool

HEADER_REQUEST_ID = "X-Request-Id"
HEADER_DEADLINE_MS = "X-Deadline-Ms"
HEADER_SCHEMA_VERSION = "X-Schema-Version"


@runtime_checkable
class Transport(Protocol):
    """What the resilience layer drives. Stubs implement the same surface."""

    async def send(self, endpoint: ServerEndpoint, request: InvocationRequest) -> Any: ...
    async def list_tools(self, endpoint: ServerEndpoint, headers: dict[str, str] | None = None) -> list[Any]: ...
    async def aclose(self) -> None: ...


class HttpTransport:
    """Transport over pooled ``httpx.AsyncClient`` connections.

    Example:
        >>> transport = HttpTransport(ConnectionPool())
        >>> data = await transport.send(endpoint, request)
    """

    __slots__ = ("_pool",)

    def __init__(self, pool: ConnectionPool | None = None) -> None:
        self._pool = pool if pool is not None else ConnectionPool()

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    async def send(self, endpoint: ServerEndpoint, request: InvocationRequest) -> Any:
        """Invoke ``request.tool_name`` on the peer and return its ``result`` payload.

        Raises:
            TransportTimeout, TransportConnectionError, TransportTLSError: Exchange failed.
            AuthRejected: Peer answered 401/403.
            ToolNotFound, SchemaViolation: Peer reported those codes.
            RemoteApplicationError: Any other peer failure (transient for 5xx).
        """
        headers = {
            **request.headers,
            "Content-Type": "application/json",
            HEADER_REQUEST_ID: request.request_id,
            HEADER_DEADLINE_MS: str(max(0, int(request.remaining() * 1000))),
        }
        if request.schema_version is not None:
            headers[HEADER_SCHEMA_VERSION] = str(request.schema_version)

        timeout = max(0.001, request.remaining())
        if endpoint.request_timeout is not None:
            timeout = min(timeout, endpoint.request_timeout)

        async with self._pool.open(endpoint, timeout=timeout) as client:
            try:
                resp = await client.post(
                    f"/tools/{quote(request.tool_name, safe='')}",
                    content=orjson.dumps(request.params),
                    headers=headers,
                    timeout=timeout,
                )
            except httpx.HTTPError as e:
                raise classify_exception(e) from e

        payload = _decode(resp)
        if resp.is_success and isinstance(payload, dict) and "result" in payload:
            return _unwrap_result(payload["result"])
        raise _failure(resp, payload, request.tool_name, endpoint.id)

    async def list_tools(self, endpoint: ServerEndpoint, headers: dict[str, str] | None = None) -> list[Any]:
        """Fetch the peer's raw tool entries (``{"tools": [...]}`` or a bare list)."""
        async with self._pool.open(endpoint) as client:
            try:
                resp = await client.get("/tools", headers=headers or {})
            except httpx.HTTPError as e:
                raise classify_exception(e) from e

        payload = _decode(resp)
        if not resp.is_success:
            raise _failure(resp, payload, None, endpoint.id)
        tools = payload.get("tools") if isinstance(payload, dict) else payload
        if not isinstance(tools, list):
            raise RemoteApplicationError(
                f"Malformed tool list from '{endpoint.id}'", status=resp.status_code,
            )
        return tools

    async def aclose(self) -> None:
        await self._pool.close_all()


# ─────────────────────────────────────────────────────────────────────────────
# Response Mapping
# ─────────────────────────────────────────────────────────────────────────────


_NO_BODY = object()


def _decode(resp: httpx.Response) -> Any:
    if not resp.content:
        return _NO_BODY
    try:
        return orjson.loads(resp.content)
    except orjson.JSONDecodeError:
        return _NO_BODY


def _unwrap_result(result: Any) -> Any:
    # MCP-style call results flag application failures in-band
    if isinstance(result, dict) and result.get("isError") is True:
        raise RemoteApplicationError("Remote tool reported an error", details={"result": result})
    return result


def _failure(resp: httpx.Response, payload: Any, tool_name: str | None, server_id: str) -> Exception:
    status = resp.status_code
    if isinstance(payload, dict) and "error" in payload:
        err = error_from_wire(payload["error"], status=status)
        if isinstance(err, ToolNotFound) and tool_name:
            return ToolNotFound(tool_name, server_id)
        return err
    if status in (401, 403):
        return AuthRejected(f"Peer '{server_id}' rejected credentials (HTTP {status})",
                            details={"status": status, "server_id": server_id})
    if status == 404 and tool_name:
        return ToolNotFound(tool_name, server_id)
    if resp.is_success:
        return RemoteApplicationError(f"Malformed response from '{server_id}': missing 'result'", status=status)
    return RemoteApplicationError(
        f"Peer '{server_id}' returned HTTP {status}",
        status=status, transient=status >= 500,
    )
