"""Inbound role: local handlers exposed as tools to remote peers.

Handlers are plain functions. Async handlers are awaited; sync handlers run
in a worker thread. Either way the call is bounded by the request deadline
and every failure comes back as an ErrorEnvelope inside the result.

Example:
    >>> inbound = InboundHandlerRegistry(ToolRegistry(), server_id="local")
    >>>
    >>> @inbound.tool(description="Create a task in the tracker")
    ... async def create_task(title: str, priority: Literal["low", "high"] = "low") -> dict:
    ...     return {"id": 1, "title": title}
    >>>
    >>> result = await inbound.handle(InvocationRequest("create_task", "local", {"title": "Fix login"}))
    >>> result.data
    {'id': 1, 'title': 'Fix login'}
"""

from __future__ import annotations

import asyncio
import inspect
import time
import types
from typing import Any, Callable, Literal, Union, get_args, get_origin, get_type_hints, overload

from pydantic import BaseModel

from toolbridge.core.models import Failure, InvocationRequest, InvocationResult, Success, ToolDescriptor
from toolbridge.core.schema import (
    ArraySchema,
    BooleanSchema,
    EnumSchema,
    NumberSchema,
    ObjectSchema,
    ParamSchema,
    StringSchema,
    from_json_schema,
    parse_schema,
)
from toolbridge.foundation.errors import JsonDict, ToolNotFound, TransportTimeout, normalize
from toolbridge.observability import get_logger, log_context
from toolbridge.registry import ToolRegistry

from .pending import Deferred, PendingInvocations

Handler = Callable[..., Any]

log = get_logger("toolbridge.inbound")


# ─────────────────────────────────────────────────────────────────────────────
# Schema Generation
# ─────────────────────────────────────────────────────────────────────────────


def _schema_for_type(tp: Any) -> ParamSchema:
    origin = get_origin(tp)
    if origin is Literal:
        return EnumSchema(values=get_args(tp))
    if origin in (Union, types.UnionType):
        # Optional[X] validates as X; the default covers the None case
        non_none = [a for a in get_args(tp) if a is not type(None)]
        return _schema_for_type(non_none[0]) if len(non_none) == 1 else ObjectSchema()
    if origin in (list, tuple, set, frozenset):
        args = [a for a in get_args(tp) if a is not Ellipsis]
        return ArraySchema(items=_schema_for_type(args[0]) if args else None)
    if origin is dict:
        return ObjectSchema()
    if tp is bool:
        return BooleanSchema()
    if tp is int:
        return NumberSchema(integer=True)
    if tp is float:
        return NumberSchema()
    if tp is str:
        return StringSchema()
    if tp in (list, tuple):
        return ArraySchema()
    if isinstance(tp, type) and issubclass(tp, BaseModel):
        return from_json_schema(tp.model_json_schema())
    return ObjectSchema()


def schema_from_signature(func: Callable[..., Any]) -> ObjectSchema:
    """Build an object schema from a function's annotated parameters.

    Parameters without a default are required. Unannotated parameters are
    treated as strings. ``*args``/``**kwargs`` are ignored.
    """
    sig = inspect.signature(func)
    try:
        hints = get_type_hints(func)
    except (NameError, TypeError):
        # Unresolvable forward references: parameters are treated as unannotated
        hints = {}
    properties: dict[str, ParamSchema] = {}
    required: list[str] = []
    for name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD) or name in ("self", "cls"):
            continue
        properties[name] = _schema_for_type(hints.get(name, str))
        if param.default is inspect.Parameter.empty:
            required.append(name)
    return ObjectSchema(properties=properties, required=tuple(required), additional_properties=False)


def _coerce_schema(schema: ParamSchema | JsonDict | None, func: Callable[..., Any]) -> ParamSchema:
    if schema is None:
        return schema_from_signature(func)
    if isinstance(schema, dict):
        return parse_schema(schema) if "kind" in schema else from_json_schema(schema)
    return schema


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Handler Registry
# ─────────────────────────────────────────────────────────────────────────────


class InboundHandlerRegistry:
    """Local tools callable by remote peers.

    Descriptors live in the shared ToolRegistry under this gateway's own
    ``server_id``; the handlers themselves are kept here.
    """

    __slots__ = ("_registry", "_server_id", "_handlers", "_pending")

    def __init__(self, registry: ToolRegistry, server_id: str, *, pending: PendingInvocations | None = None) -> None:
        self._registry = registry
        self._server_id = server_id
        self._handlers: dict[str, Handler] = {}
        self._pending = pending if pending is not None else PendingInvocations()

    @property
    def server_id(self) -> str:
        return self._server_id

    @property
    def pending(self) -> PendingInvocations:
        return self._pending

    def expose(
        self,
        name: str,
        handler: Handler,
        *,
        description: str = "",
        schema: ParamSchema | JsonDict | None = None,
        cacheable: bool = False,
        cache_ttl: float | None = None,
        version: int = 1,
        overwrite: bool = False,
    ) -> ToolDescriptor:
        """Register ``handler`` as tool ``name``.

        ``schema`` may be a constraint tree, a JSON Schema dict, or None to
        derive it from the handler's signature.

        Raises:
            DuplicateTool: Same name already exposed with a different schema
                (pass ``overwrite=True`` with a higher version to replace it).
        """
        descriptor = ToolDescriptor(
            name=name,
            description=description or _first_line(handler.__doc__),
            param_schema=_coerce_schema(schema, handler),
            server_id=self._server_id,
            version=version,
            cacheable=cacheable,
            cache_ttl=cache_ttl,
        )
        self._registry.register(self._server_id, descriptor, overwrite=overwrite)
        self._handlers[name] = handler
        return self._registry.lookup(self._server_id, name)

    @overload
    def tool(self, func: Handler) -> Handler: ...

    @overload
    def tool(
        self, *, name: str | None = None, description: str = "", schema: ParamSchema | JsonDict | None = None,
        cacheable: bool = False, cache_ttl: float | None = None, version: int = 1,
    ) -> Callable[[Handler], Handler]: ...

    def tool(
        self,
        func: Handler | None = None,
        *,
        name: str | None = None,
        description: str = "",
        schema: ParamSchema | JsonDict | None = None,
        cacheable: bool = False,
        cache_ttl: float | None = None,
        version: int = 1,
    ) -> Handler | Callable[[Handler], Handler]:
        """Decorator form of ``expose``. The function is returned unchanged.

        Example:
            >>> @inbound.tool
            ... def ping() -> str:
            ...     return "pong"
        """
        def decorator(fn: Handler) -> Handler:
            self.expose(
                name or fn.__name__, fn, description=description, schema=schema,
                cacheable=cacheable, cache_ttl=cache_ttl, version=version,
            )
            return fn

        return decorator(func) if func is not None else decorator

    def remove(self, name: str) -> bool:
        self._handlers.pop(name, None)
        return self._registry.unregister(self._server_id, name)

    def list_tools(self) -> list[JsonDict]:
        """Wire descriptors for the list-tools operation."""
        return [d.to_wire() for d in self._registry.tools(self._server_id) if d.name in self._handlers]

    def descriptor(self, name: str) -> ToolDescriptor:
        if name not in self._handlers:
            raise ToolNotFound(name, self._server_id)
        return self._registry.lookup(self._server_id, name)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    # ─────────────────────────────────────────────────────────────────
    # Invocation
    # ─────────────────────────────────────────────────────────────────

    async def handle(self, request: InvocationRequest) -> InvocationResult:
        """Run one inbound invocation. Never raises (except on cancellation)."""
        start = time.perf_counter()
        with log_context(request_id=request.request_id, tool=request.tool_name, direction="inbound"):
            try:
                outcome: Success[Any] | Failure = Success(await self._dispatch(request))
            except Exception as e:  # noqa: BLE001 - normalized into the result
                outcome = Failure(normalize(e))
            latency = time.perf_counter() - start
            _log_completed(outcome, latency)
        return InvocationResult(request.request_id, outcome, latency)

    async def _dispatch(self, request: InvocationRequest) -> Any:
        name = request.tool_name
        if (handler := self._handlers.get(name)) is None:
            raise ToolNotFound(name, self._server_id)
        self._registry.check_version(self._server_id, name, request.schema_version)
        self._registry.validate(self._server_id, name, request.params)

        remaining = request.remaining()
        if remaining <= 0:
            raise TransportTimeout(f"Deadline passed before '{name}' started")
        try:
            async with asyncio.timeout(remaining):
                result = await _run(handler, request.params)
        except TimeoutError:
            raise TransportTimeout(
                f"Handler '{name}' exceeded its deadline ({remaining * 1000:.0f}ms)",
                details={"tool": name},
            ) from None

        if isinstance(result, Deferred):
            record = self._pending.create(
                name, request.params, correlation_id=result.correlation_id, ttl=result.ttl, message=result.message,
            )
            return record.to_wire(record.created_at)
        return _to_jsonable(result)


async def _run(handler: Handler, params: JsonDict) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(**params)
    result = await asyncio.to_thread(handler, **params)
    if inspect.isawaitable(result):
        return await result
    return result


def _first_line(doc: str | None) -> str:
    return doc.strip().splitlines()[0].strip() if doc and doc.strip() else ""


def _log_completed(outcome: Success[Any] | Failure, latency: float) -> None:
    if isinstance(outcome, Failure):
        log.warning("invoke.completed", ok=False, code=outcome.error.code.value,
                    latency_ms=round(latency * 1000, 2))
    else:
        log.info("invoke.completed", ok=True, latency_ms=round(latency * 1000, 2))

