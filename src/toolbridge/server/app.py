"""HTTP surface for the inbound role.

Routes:
    GET  /tools                   → list tools
    POST /tools/{name}            → invoke tool with JSON params body
    GET  /tools/{name}/schema     → one tool's descriptor
    GET  /invocations/{cid}       → pending invocation status
    POST /invocations/{cid}       → complete a pending invocation
    GET  /health                  → liveness plus circuit states

Example:
    >>> gateway = Gateway()
    >>> app = create_app(gateway)        # embed in a larger ASGI app
    >>> serve(gateway, port=8000)        # or run standalone under uvicorn
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import orjson
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from toolbridge.core.models import InvocationRequest, new_request_id
from toolbridge.foundation.errors import (
    ErrorCode,
    ErrorEnvelope,
    GatewayError,
    PendingInvocationError,
    SchemaViolation,
    error_from_wire,
)
from toolbridge.gateway import Gateway
from toolbridge.observability import configure_logging
from toolbridge.transport import HEADER_DEADLINE_MS, HEADER_REQUEST_ID, HEADER_SCHEMA_VERSION

_STATUS: dict[ErrorCode, int] = {
    ErrorCode.SCHEMA_VIOLATION: 422,
    ErrorCode.SCHEMA_VERSION_MISMATCH: 409,
    ErrorCode.TOOL_NOT_FOUND: 404,
    ErrorCode.DUPLICATE_TOOL: 409,
    ErrorCode.ENDPOINT_NOT_CONFIGURED: 500,
    ErrorCode.AUTH_CONFIG_INVALID: 500,
    ErrorCode.AUTH_REJECTED: 401,
    ErrorCode.TRANSPORT_TIMEOUT: 504,
    ErrorCode.TRANSPORT_CONNECTION_ERROR: 502,
    ErrorCode.TRANSPORT_TLS_ERROR: 502,
    ErrorCode.CIRCUIT_OPEN: 503,
    ErrorCode.POOL_EXHAUSTED: 503,
    ErrorCode.REMOTE_APPLICATION_ERROR: 502,
    ErrorCode.PENDING_INVOCATION_ERROR: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


class JSONResponse(Response):
    """orjson-rendered JSON response."""

    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        return orjson.dumps(content, option=orjson.OPT_NON_STR_KEYS, default=str)


def status_for(error: ErrorEnvelope) -> int:
    return _STATUS.get(error.code, 400)


def _error_response(error: ErrorEnvelope, *, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse({"error": error.to_wire()}, status_code=status_for(error), headers=headers)


def _pending_error(e: PendingInvocationError) -> JSONResponse:
    # Unknown id is 404; a record that can no longer change is 409
    status = 409 if "status" in e.details else 404
    return JSONResponse({"error": e.to_envelope().to_wire()}, status_code=status)


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise SchemaViolation.single("", f"request body is not valid JSON: {e}") from None


def _invocation_from(request: Request, server_id: str, name: str, params: Any, default_deadline: float) -> InvocationRequest:
    budget = default_deadline
    if (ms := request.headers.get(HEADER_DEADLINE_MS)) is not None:
        try:
            budget = min(budget, max(0.0, int(ms) / 1000))
        except ValueError:
            raise SchemaViolation.single(HEADER_DEADLINE_MS, "must be an integer number of milliseconds") from None
    version: int | None = None
    if (raw := request.headers.get(HEADER_SCHEMA_VERSION)) is not None:
        try:
            version = int(raw)
        except ValueError:
            raise SchemaViolation.single(HEADER_SCHEMA_VERSION, "must be an integer") from None
    return InvocationRequest(
        tool_name=name,
        server_id=server_id,
        params=params,
        deadline=time.monotonic() + budget,
        request_id=request.headers.get(HEADER_REQUEST_ID) or new_request_id(),
        schema_version=version,
    )


def create_app(gateway: Gateway, *, manage_lifecycle: bool = False) -> Starlette:
    """Build the ASGI app serving ``gateway``'s inbound role.

    With ``manage_lifecycle`` the app starts and stops the gateway from its
    lifespan (what ``serve`` uses).
    """
    default_deadline = gateway.settings.http.default_deadline

    async def list_tools(request: Request) -> Response:
        return JSONResponse({"server": gateway.server_id, "tools": gateway.list_tools()})

    async def invoke_tool(request: Request) -> Response:
        name = request.path_params["name"]
        try:
            params = await _json_body(request)
            invocation = _invocation_from(request, gateway.server_id, name, params, default_deadline)
        except GatewayError as e:
            return _error_response(e.to_envelope())

        result = await gateway.handle(invocation)
        headers = {HEADER_REQUEST_ID: result.request_id}
        if result.error is not None:
            return _error_response(result.error, headers=headers)
        return JSONResponse(result.to_wire(), headers=headers)

    async def get_tool_schema(request: Request) -> Response:
        try:
            descriptor = gateway.inbound.descriptor(request.path_params["name"])
        except GatewayError as e:
            return _error_response(e.to_envelope())
        return JSONResponse(descriptor.to_wire())

    async def get_invocation(request: Request) -> Response:
        try:
            record = gateway.pending.get(request.path_params["cid"])
        except PendingInvocationError as e:
            return _pending_error(e)
        return JSONResponse(record.to_wire(time.monotonic()))

    async def complete_invocation(request: Request) -> Response:
        cid = request.path_params["cid"]
        try:
            body = await _json_body(request)
            if not isinstance(body, dict) or ("result" in body) == ("error" in body):
                raise SchemaViolation.single("", "body must contain exactly one of 'result' or 'error'")
            if "error" in body:
                record = gateway.pending.fail(cid, error_from_wire(body["error"]).to_envelope())
            else:
                record = gateway.pending.complete(cid, body["result"])
        except PendingInvocationError as e:
            return _pending_error(e)
        except GatewayError as e:
            return _error_response(e.to_envelope())
        return JSONResponse(record.to_wire())

    async def health(request: Request) -> Response:
        return JSONResponse(gateway.health())

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await gateway.start()
        try:
            yield
        finally:
            await gateway.stop()

    routes = [
        Route("/tools", list_tools, methods=["GET"]),
        Route("/tools/{name}", invoke_tool, methods=["POST"]),
        Route("/tools/{name}/schema", get_tool_schema, methods=["GET"]),
        Route("/invocations/{cid}", get_invocation, methods=["GET"]),
        Route("/invocations/{cid}", complete_invocation, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
    ]
    return Starlette(routes=routes, lifespan=lifespan if manage_lifecycle else None)


def serve(gateway: Gateway, *, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Configure logging from settings and run the gateway under uvicorn (blocking)."""
    cfg = gateway.settings.logging
    configure_logging(format=cfg.format, level=cfg.level)
    uvicorn.run(create_app(gateway, manage_lifecycle=True), host=host, port=port, log_level=cfg.level.lower())
