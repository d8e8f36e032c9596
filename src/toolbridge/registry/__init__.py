"""Tool registry and parameter schemas."""

from toolbridge.core.schema import (
    ArraySchema,
    BooleanSchema,
    EnumSchema,
    NumberSchema,
    ObjectSchema,
    ParamSchema,
    StringSchema,
    from_json_schema,
    to_json_schema,
    validate_params,
)

from .registry import DiscoveryReport, SkippedEntry, ToolRegistry, ToolSource, descriptor_from_wire

__all__ = [
    "ToolRegistry", "ToolSource", "DiscoveryReport", "SkippedEntry", "descriptor_from_wire",
    "ParamSchema", "StringSchema", "NumberSchema", "BooleanSchema", "EnumSchema",
    "ArraySchema", "ObjectSchema", "validate_params", "to_json_schema", "from_json_schema",
]
