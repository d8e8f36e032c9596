"""Standardized error handling for the gateway.

Provides error codes, the ErrorEnvelope returned across the public boundary,
and the typed exception taxonomy raised inside the core.
Uses Pydantic for validation and serialization of the envelope.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

JsonDict = dict[str, Any]


class ErrorCode(StrEnum):
    """Standard error codes for gateway failures.

    Used for programmatic error handling and retry decisions.
    """
    SCHEMA_VIOLATION = "SCHEMA_VIOLATION"
    SCHEMA_VERSION_MISMATCH = "SCHEMA_VERSION_MISMATCH"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    DUPLICATE_TOOL = "DUPLICATE_TOOL"
    ENDPOINT_NOT_CONFIGURED = "ENDPOINT_NOT_CONFIGURED"
    AUTH_CONFIG_INVALID = "AUTH_CONFIG_INVALID"
    AUTH_REJECTED = "AUTH_REJECTED"
    TRANSPORT_TIMEOUT = "TRANSPORT_TIMEOUT"
    TRANSPORT_CONNECTION_ERROR = "TRANSPORT_CONNECTION_ERROR"
    TRANSPORT_TLS_ERROR = "TRANSPORT_TLS_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    POOL_EXHAUSTED = "POOL_EXHAUSTED"
    REMOTE_APPLICATION_ERROR = "REMOTE_APPLICATION_ERROR"
    PENDING_INVOCATION_ERROR = "PENDING_INVOCATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Transient transport classes - the only codes an envelope may mark retryable
TRANSIENT_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.TRANSPORT_TIMEOUT,
    ErrorCode.TRANSPORT_CONNECTION_ERROR,
})


class ErrorEnvelope(BaseModel):
    """Uniform structured failure returned across the gateway boundary.

    Attributes:
        code: Machine-readable error classification
        message: Human-readable error message
        retryable: Whether a retry might succeed (transient transport only)
        details: Structured extra information (violations, causes, status)
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        validate_default=True,
        json_schema_extra={
            "title": "Error Envelope",
            "examples": [{
                "code": "SCHEMA_VIOLATION",
                "message": "1 parameter violation(s)",
                "retryable": False,
                "details": {"violations": [{"field": "title", "reason": "required field missing"}]},
            }],
        },
    )

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    message: Annotated[str, Field(min_length=1)]
    retryable: bool = False
    details: JsonDict = Field(default_factory=dict, repr=False)

    @field_validator("message", mode="before")
    @classmethod
    def _ensure_message(cls, v: str | Exception) -> str:
        """Accept Exception objects and extract message."""
        if isinstance(v, Exception):
            v = str(v) or type(v).__name__
        return v

    @computed_field
    @property
    def is_auth_error(self) -> bool:
        """Whether this is an authentication/authorization error."""
        return self.code in (ErrorCode.AUTH_CONFIG_INVALID, ErrorCode.AUTH_REJECTED)

    def to_wire(self) -> JsonDict:
        """Protocol shape: ``{"code", "message"}`` plus details when present."""
        wire: JsonDict = {"code": self.code.value, "message": self.message}
        if self.details:
            wire["details"] = self.details
        return wire

    def render(self) -> str:
        return f"[{self.code}] {self.message}"

    __str__ = render


# ═══════════════════════════════════════════════════════════════════════════════
# Exception Taxonomy
# ═══════════════════════════════════════════════════════════════════════════════


class GatewayError(Exception):
    """Base for all typed gateway failures.

    Subclasses pin a code; retryability is derived from the code unless a
    subclass overrides ``retryable``.
    """

    code: ClassVar[ErrorCode] = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, details: JsonDict | None = None) -> None:
        # envelopes require a non-blank message
        if not message or not message.strip():
            message = type(self).__name__
        super().__init__(message)
        self.message = message
        self.details: JsonDict = details or {}

    @property
    def retryable(self) -> bool:
        return self.code in TRANSIENT_CODES

    def to_envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(code=self.code, message=self.message, retryable=self.retryable, details=self.details)


class FieldViolation(BaseModel):
    """A single parameter that failed validation."""

    model_config = ConfigDict(frozen=True)

    field: str
    reason: str

    def __str__(self) -> str:
        return f"{self.field or '<root>'}: {self.reason}"


class SchemaViolation(GatewayError):
    """Parameters failed validation. Lists every violating field."""

    code = ErrorCode.SCHEMA_VIOLATION

    def __init__(self, violations: list[FieldViolation], *, tool_name: str = "") -> None:
        self.violations = violations
        prefix = f"Invalid parameters for '{tool_name}'" if tool_name else "Invalid parameters"
        super().__init__(
            f"{prefix}: " + "; ".join(str(v) for v in violations),
            details={"violations": [v.model_dump() for v in violations]},
        )

    @property
    def fields(self) -> list[str]:
        return [v.field for v in self.violations]

    @classmethod
    def single(cls, field: str, reason: str, *, tool_name: str = "") -> Self:
        return cls([FieldViolation(field=field, reason=reason)], tool_name=tool_name)


class SchemaVersionMismatch(GatewayError):
    code = ErrorCode.SCHEMA_VERSION_MISMATCH


class ToolNotFound(GatewayError):
    code = ErrorCode.TOOL_NOT_FOUND

    def __init__(self, tool_name: str, server_id: str | None = None) -> None:
        where = f" on server '{server_id}'" if server_id else ""
        super().__init__(f"Tool '{tool_name}' not found{where}", details={"tool": tool_name, "server_id": server_id})


class DuplicateTool(GatewayError):
    code = ErrorCode.DUPLICATE_TOOL


class EndpointNotConfigured(GatewayError):
    code = ErrorCode.ENDPOINT_NOT_CONFIGURED

    def __init__(self, server_id: str) -> None:
        super().__init__(f"No endpoint configured for server '{server_id}'", details={"server_id": server_id})


class AuthConfigInvalid(GatewayError):
    code = ErrorCode.AUTH_CONFIG_INVALID


class AuthRejected(GatewayError):
    code = ErrorCode.AUTH_REJECTED


class TransportTimeout(GatewayError):
    code = ErrorCode.TRANSPORT_TIMEOUT


class TransportConnectionError(GatewayError):
    code = ErrorCode.TRANSPORT_CONNECTION_ERROR


class TransportTLSError(GatewayError):
    code = ErrorCode.TRANSPORT_TLS_ERROR


class CircuitOpen(GatewayError):
    code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, server_id: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit open for server '{server_id}' - failing fast. Retry in {retry_after:.1f}s",
            details={"server_id": server_id, "retry_after": round(retry_after, 3)},
        )


class PoolExhausted(GatewayError):
    code = ErrorCode.POOL_EXHAUSTED


class PendingInvocationError(GatewayError):
    code = ErrorCode.PENDING_INVOCATION_ERROR


class RemoteApplicationError(GatewayError):
    """Failure reported by (or terminal failure talking to) a remote peer.

    ``transient`` marks 5xx-equivalent responses, which the retry loop treats
    like transport failures. A terminal error wrapping an exhausted retry
    sequence carries the last underlying cause and is never transient.
    """

    code = ErrorCode.REMOTE_APPLICATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        remote_code: str | None = None,
        transient: bool = False,
        cause: GatewayError | None = None,
        details: JsonDict | None = None,
    ) -> None:
        info: JsonDict = dict(details or {})
        if status is not None:
            info["status"] = status
        if remote_code:
            info["remote_code"] = remote_code
        if cause is not None:
            info["cause"] = cause.to_envelope().to_wire()
        super().__init__(message, details=info)
        self.status = status
        self.remote_code = remote_code
        self.transient = transient
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return False

    @classmethod
    def terminal(cls, cause: GatewayError, attempts: int) -> Self:
        """Wrap the last transient failure once the attempt budget is spent."""
        return cls(
            f"Remote call failed after {attempts} attempt(s): {cause.message}",
            cause=cause,
            details={"attempts": attempts},
        )


def is_transient(exc: BaseException) -> bool:
    """Whether the retry loop may attempt again after ``exc``."""
    if isinstance(exc, RemoteApplicationError):
        return exc.transient
    return isinstance(exc, (TransportTimeout, TransportConnectionError))
