"""toolbridge - bidirectional tool invocation gateway.

Exposes local functions as named, schema-described tools to remote peers,
and discovers and invokes tools exposed by remote peers, with retry,
circuit breaking, result caching, connection pooling and pluggable auth.

Quick Start:
    >>> from toolbridge import Gateway, GatewaySettings, ServerEndpoint, BearerAuth
    >>>
    >>> settings = GatewaySettings(endpoints=[
    ...     ServerEndpoint(id="jira", base_address="https://tools.example.com",
    ...                    auth=BearerAuth(token="sk-xxx")),
    ... ])
    >>> async with Gateway(settings) as gw:
    ...     @gw.tool(description="Look up a customer by id")
    ...     def get_customer(customer_id: int) -> dict:
    ...         return {"id": customer_id}
    ...
    ...     await gw.discover("jira")
    ...     result = await gw.invoke("jira", "create_task", {"title": "Fix login"}, timeout=5)
    ...     result.data if result.ok else result.error.render()

Serving the inbound role over HTTP:
    >>> from toolbridge.server import serve
    >>> serve(gw, host="0.0.0.0", port=8000)
"""

from .auth import ApiKeyAuth, AuthConfig, AuthManager, BearerAuth, NoAuth, OAuth2ClientCredentials
from .core import (
    ArraySchema,
    BooleanSchema,
    EnumSchema,
    Failure,
    InvocationRequest,
    InvocationResult,
    NumberSchema,
    ObjectSchema,
    ParamSchema,
    ServerEndpoint,
    StringSchema,
    Success,
    ToolDescriptor,
)
from .foundation.config import GatewaySettings, get_settings
from .foundation.errors import (
    AuthConfigInvalid,
    AuthRejected,
    CircuitOpen,
    DuplicateTool,
    EndpointNotConfigured,
    ErrorCode,
    ErrorEnvelope,
    GatewayError,
    PendingInvocationError,
    PoolExhausted,
    RemoteApplicationError,
    SchemaVersionMismatch,
    SchemaViolation,
    ToolNotFound,
    TransportConnectionError,
    TransportTimeout,
    TransportTLSError,
    normalize,
)
from .gateway import Gateway
from .observability import configure_logging, get_logger
from .registry import DiscoveryReport, ToolRegistry
from .router import Deferred, PendingStatus

__version__ = "0.1.0"

__all__ = [
    # Gateway
    "Gateway", "GatewaySettings", "get_settings",
    # Model
    "ToolDescriptor", "ServerEndpoint", "InvocationRequest", "InvocationResult", "Success", "Failure",
    "ParamSchema", "StringSchema", "NumberSchema", "BooleanSchema", "EnumSchema", "ArraySchema", "ObjectSchema",
    "ToolRegistry", "DiscoveryReport", "Deferred", "PendingStatus",
    # Auth
    "AuthConfig", "NoAuth", "ApiKeyAuth", "BearerAuth", "OAuth2ClientCredentials", "AuthManager",
    # Errors
    "ErrorCode", "ErrorEnvelope", "GatewayError", "normalize",
    "SchemaViolation", "SchemaVersionMismatch", "ToolNotFound", "DuplicateTool", "EndpointNotConfigured",
    "AuthConfigInvalid", "AuthRejected", "TransportTimeout", "TransportConnectionError", "TransportTLSError",
    "CircuitOpen", "PoolExhausted", "RemoteApplicationError", "PendingInvocationError",
    # Logging
    "configure_logging", "get_logger",
    "__version__",
]
