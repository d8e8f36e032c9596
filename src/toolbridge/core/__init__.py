"""Core data model: parameter schemas, tool descriptors, endpoints, requests, results."""

from .models import (
    Failure,
    InvocationRequest,
    InvocationResult,
    ServerEndpoint,
    Success,
    ToolDescriptor,
    new_request_id,
)
from .schema import (
    ArraySchema,
    BooleanSchema,
    EnumSchema,
    NumberSchema,
    ObjectSchema,
    ParamSchema,
    StringSchema,
    from_json_schema,
    parse_schema,
    to_json_schema,
    validate_params,
)

__all__ = [
    # Models
    "ToolDescriptor", "ServerEndpoint", "InvocationRequest", "InvocationResult",
    "Success", "Failure", "new_request_id",
    # Schemas
    "ParamSchema", "StringSchema", "NumberSchema", "BooleanSchema", "EnumSchema",
    "ArraySchema", "ObjectSchema",
    "validate_params", "parse_schema", "to_json_schema", "from_json_schema",
]
