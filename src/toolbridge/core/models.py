"""Data model shared by every gateway component.

- ToolDescriptor: named, schema-described tool owned by a server (frozen)
- ServerEndpoint: configured peer with auth and pooling limits (frozen)
- InvocationRequest: one call in flight (request-scoped, headers mutable)
- InvocationResult: Success(data) or Failure(ErrorEnvelope) plus latency
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, field_validator

from toolbridge.auth.config import AuthConfig, NoAuth
from toolbridge.core.schema import ObjectSchema, ParamSchema, to_json_schema
from toolbridge.foundation.errors import ErrorEnvelope, JsonDict

T = TypeVar("T")


class ToolDescriptor(BaseModel):
    """A tool exposed by a server.

    Attributes:
        name: Unique per server
        description: Human/LLM-facing description
        param_schema: Constraint tree the params must satisfy
        server_id: Owning server
        version: Schema version; bumped to overwrite a registration
        cacheable: Idempotent/read-only tools whose results may be cached
        cache_ttl: Per-tool TTL override in seconds
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True, revalidate_instances="never")

    name: Annotated[str, Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.\-]+$")]
    description: str = ""
    param_schema: ParamSchema = Field(default_factory=ObjectSchema)
    server_id: Annotated[str, Field(min_length=1)]
    version: PositiveInt = 1
    cacheable: bool = False
    cache_ttl: PositiveFloat | None = None

    def same_schema(self, other: ToolDescriptor) -> bool:
        return self.param_schema == other.param_schema

    def to_wire(self) -> JsonDict:
        """list-tools entry: ``{name, description, parameters, version, cacheable}``."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": to_json_schema(self.param_schema),
            "version": self.version,
            "cacheable": self.cacheable,
        }


class ServerEndpoint(BaseModel):
    """A peer the gateway talks to. Created at configuration time."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    id: Annotated[str, Field(min_length=1)]
    base_address: str
    auth: AuthConfig = Field(default_factory=NoAuth)
    transport_kind: Literal["http"] = "http"
    max_connections: PositiveInt = 10
    request_timeout: PositiveFloat | None = Field(default=None, description="Per-attempt timeout override")

    @field_validator("base_address")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_address must start with http:// or https://")
        return v.rstrip("/")


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class InvocationRequest:
    """A single tool call. ``deadline`` is an absolute ``time.monotonic()`` value."""

    tool_name: str
    server_id: str
    params: dict[str, Any] = field(default_factory=dict)
    deadline: float = field(default_factory=lambda: time.monotonic() + 30.0)
    request_id: str = field(default_factory=new_request_id)
    schema_version: int | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def with_timeout(cls, tool_name: str, server_id: str, params: dict[str, Any], timeout: float, **kw: Any) -> InvocationRequest:
        return cls(tool_name, server_id, params, deadline=time.monotonic() + timeout, **kw)

    def remaining(self) -> float:
        """Seconds left before the deadline (negative once passed)."""
        return self.deadline - time.monotonic()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


# ─────────────────────────────────────────────────────────────────────────────
# Outcomes
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class Success(Generic[T]):
    data: T
    cached: bool = False


@dataclass(slots=True, frozen=True)
class Failure:
    error: ErrorEnvelope


@dataclass(slots=True, frozen=True)
class InvocationResult:
    """Outcome of one invocation, inbound or outbound. Never raises."""

    request_id: str
    outcome: Success[Any] | Failure
    latency: float = 0.0

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)

    @property
    def data(self) -> Any:
        return self.outcome.data if isinstance(self.outcome, Success) else None

    @property
    def error(self) -> ErrorEnvelope | None:
        return self.outcome.error if isinstance(self.outcome, Failure) else None

    @property
    def cached(self) -> bool:
        return isinstance(self.outcome, Success) and self.outcome.cached

    def to_wire(self) -> JsonDict:
        """Protocol body: ``{"result": data}`` or ``{"error": {code, message}}``."""
        if isinstance(self.outcome, Success):
            return {"result": self.outcome.data}
        return {"error": self.outcome.error.to_wire()}
