"""Scriptable Transport for exercising the router and resilience layer.

Provides StubTransport for:
- Scripting per-tool outcomes (values, exceptions, callables) in order
- Simulating latency to drive deadline behavior
- Recording every send for verification

Example:
    >>> stub = StubTransport()
    >>> stub.script("create_task", TransportConnectionError("reset"), {"id": 1})
    >>> gw = Gateway(settings, transport=stub)
    >>> (await gw.invoke("jira", "create_task", {"title": "x"})).data
    {'id': 1}
    >>> stub.call_count("create_task")
    2
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable

from toolbridge.core.models import InvocationRequest, ServerEndpoint
from toolbridge.foundation.errors import JsonDict, ToolNotFound

Outcome = Any  # value | BaseException | type[BaseException] | Callable[[InvocationRequest], Any]


@dataclass(slots=True)
class SentCall:
    """Record of a single send."""
    server_id: str
    tool_name: str
    params: JsonDict
    headers: dict[str, str]
    request_id: str
    at: float


@dataclass
class StubTransport:
    """In-memory Transport with scripted outcomes.

    Scripted outcomes are consumed in order per tool; once exhausted, the
    ``default`` for the tool (or ``ToolNotFound`` when none) applies.

    Attributes:
        latency: Seconds each send sleeps before answering
        defaults: Outcome used per tool when its script is empty
        tools: Raw list-tools entries per server id
    """

    latency: float = 0.0
    defaults: dict[str, Outcome] = field(default_factory=dict)
    tools: dict[str, list[Any]] = field(default_factory=dict)
    calls: list[SentCall] = field(default_factory=list)
    list_calls: list[str] = field(default_factory=list)
    closed: bool = False
    _scripts: dict[str, deque[Outcome]] = field(default_factory=lambda: defaultdict(deque), repr=False)

    def script(self, tool_name: str, *outcomes: Outcome) -> StubTransport:
        """Queue outcomes for the next sends of ``tool_name``."""
        self._scripts[tool_name].extend(outcomes)
        return self

    def fail_times(self, tool_name: str, n: int, error: Callable[[], BaseException], then: Outcome) -> StubTransport:
        """``n`` failures built by ``error()``, followed by ``then``."""
        return self.script(tool_name, *(error() for _ in range(n)), then)

    def call_count(self, tool_name: str | None = None) -> int:
        return sum(1 for c in self.calls if tool_name is None or c.tool_name == tool_name)

    @property
    def last_call(self) -> SentCall | None:
        return self.calls[-1] if self.calls else None

    async def send(self, endpoint: ServerEndpoint, request: InvocationRequest) -> Any:
        self.calls.append(SentCall(
            endpoint.id, request.tool_name, dict(request.params), dict(request.headers),
            request.request_id, time.monotonic(),
        ))
        if self.latency:
            await asyncio.sleep(self.latency)
        script = self._scripts.get(request.tool_name)
        if script:
            outcome = script.popleft()
        elif request.tool_name in self.defaults:
            outcome = self.defaults[request.tool_name]
        else:
            raise ToolNotFound(request.tool_name, endpoint.id)
        return await _resolve(outcome, request)

    async def list_tools(self, endpoint: ServerEndpoint, headers: dict[str, str] | None = None) -> list[Any]:
        self.list_calls.append(endpoint.id)
        return list(self.tools.get(endpoint.id, []))

    async def aclose(self) -> None:
        self.closed = True


async def _resolve(outcome: Outcome, request: InvocationRequest) -> Any:
    if isinstance(outcome, BaseException):
        raise outcome
    if isinstance(outcome, type) and issubclass(outcome, BaseException):
        raise outcome(f"Scripted {outcome.__name__}")
    if callable(outcome):
        result = outcome(request)
        return await result if asyncio.iscoroutine(result) else result
    return outcome
