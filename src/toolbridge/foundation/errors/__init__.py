"""Unified error handling for toolbridge.

- ErrorCode: Standard error codes for gateway failures
- ErrorEnvelope: The structured failure returned across the public boundary
- GatewayError and subclasses: Typed exceptions raised inside the core
- normalize/classify_exception: Map any failure origin onto the taxonomy
"""

from .errors import (
    TRANSIENT_CODES,
    AuthConfigInvalid,
    AuthRejected,
    CircuitOpen,
    DuplicateTool,
    EndpointNotConfigured,
    ErrorCode,
    ErrorEnvelope,
    FieldViolation,
    GatewayError,
    JsonDict,
    PendingInvocationError,
    PoolExhausted,
    RemoteApplicationError,
    SchemaVersionMismatch,
    SchemaViolation,
    ToolNotFound,
    TransportConnectionError,
    TransportTimeout,
    TransportTLSError,
    is_transient,
)
from .normalize import classify_exception, error_from_wire, normalize

__all__ = [
    # Codes & envelope
    "ErrorCode", "ErrorEnvelope", "TRANSIENT_CODES", "JsonDict",
    # Taxonomy
    "GatewayError", "FieldViolation", "SchemaViolation", "SchemaVersionMismatch",
    "ToolNotFound", "DuplicateTool", "EndpointNotConfigured",
    "AuthConfigInvalid", "AuthRejected",
    "TransportTimeout", "TransportConnectionError", "TransportTLSError",
    "CircuitOpen", "PoolExhausted", "PendingInvocationError", "RemoteApplicationError",
    # Normalization
    "is_transient", "classify_exception", "normalize", "error_from_wire",
]
