"""Parameter schemas as a tagged constraint tree.

Each node is a frozen Pydantic model discriminated by ``kind``:
string, number, boolean, array, object, enum. Arrays and objects nest
further nodes. Validation walks the tree against plain JSON data and
collects every violation rather than stopping at the first.

Example:
    >>> schema = ObjectSchema(
    ...     properties={"title": StringSchema(min_length=1), "priority": EnumSchema(values=["low", "high"])},
    ...     required=["title"],
    ... )
    >>> [v.field for v in validate_params(schema, {"priority": "urgent"})]
    ['title', 'priority']
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, field_validator

from toolbridge.foundation.errors import FieldViolation, JsonDict


class _SchemaNode(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", revalidate_instances="never")

    description: str | None = Field(default=None, repr=False)
    nullable: bool = Field(default=False, repr=False)


class StringSchema(_SchemaNode):
    kind: Literal["string"] = "string"
    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)
    pattern: str | None = None

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid pattern {v!r}: {e}") from None
        return v


class NumberSchema(_SchemaNode):
    kind: Literal["number"] = "number"
    integer: bool = False
    minimum: float | None = None
    maximum: float | None = None


class BooleanSchema(_SchemaNode):
    kind: Literal["boolean"] = "boolean"


class EnumSchema(_SchemaNode):
    kind: Literal["enum"] = "enum"
    values: tuple[str | int | float | bool | None, ...] = Field(min_length=1)


class ArraySchema(_SchemaNode):
    kind: Literal["array"] = "array"
    items: ParamSchema | None = None
    min_items: int | None = Field(default=None, ge=0)
    max_items: int | None = Field(default=None, ge=0)


class ObjectSchema(_SchemaNode):
    kind: Literal["object"] = "object"
    properties: dict[str, ParamSchema] = Field(default_factory=dict)
    required: tuple[str, ...] = ()
    additional_properties: bool = True


def _kind_of(v: Any) -> str:
    if isinstance(v, dict):
        return str(v.get("kind", "object"))
    return getattr(v, "kind", "object")


ParamSchema = Annotated[
    Union[
        Annotated[StringSchema, Tag("string")],
        Annotated[NumberSchema, Tag("number")],
        Annotated[BooleanSchema, Tag("boolean")],
        Annotated[EnumSchema, Tag("enum")],
        Annotated[ArraySchema, Tag("array")],
        Annotated[ObjectSchema, Tag("object")],
    ],
    Discriminator(_kind_of),
]

ArraySchema.model_rebuild()
ObjectSchema.model_rebuild()

_ParamSchemaAdapter: TypeAdapter[ParamSchema] = TypeAdapter(ParamSchema)


def parse_schema(data: JsonDict) -> ParamSchema:
    """Validate a dict in the native ``kind`` form as a schema tree."""
    return _ParamSchemaAdapter.validate_python(data)


# ═══════════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════════

_TYPE_NAMES: dict[type, str] = {
    str: "string", bool: "boolean", int: "integer", float: "number",
    list: "array", dict: "object", type(None): "null",
}


def _type_name(value: object) -> str:
    return _TYPE_NAMES.get(type(value), type(value).__name__)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _check(node: ParamSchema, value: Any, path: str, out: list[FieldViolation]) -> None:
    def fail(reason: str) -> None:
        out.append(FieldViolation(field=path, reason=reason))

    if value is None and node.nullable:
        return None
    match node:
        case StringSchema():
            if not isinstance(value, str):
                return fail(f"expected string, got {_type_name(value)}")
            if node.min_length is not None and len(value) < node.min_length:
                fail(f"length {len(value)} is shorter than {node.min_length}")
            if node.max_length is not None and len(value) > node.max_length:
                fail(f"length {len(value)} exceeds {node.max_length}")
            if node.pattern is not None and re.search(node.pattern, value) is None:
                fail(f"does not match pattern {node.pattern!r}")
        case NumberSchema():
            # bool is an int subclass but never a number here
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return fail(f"expected {'integer' if node.integer else 'number'}, got {_type_name(value)}")
            if node.integer and not (isinstance(value, int) or value.is_integer()):
                return fail("expected integer, got non-integral number")
            if node.minimum is not None and value < node.minimum:
                fail(f"{value} is below minimum {node.minimum}")
            if node.maximum is not None and value > node.maximum:
                fail(f"{value} is above maximum {node.maximum}")
        case BooleanSchema():
            if not isinstance(value, bool):
                fail(f"expected boolean, got {_type_name(value)}")
        case EnumSchema():
            if not any(value == allowed and type(value) is type(allowed) for allowed in node.values):
                fail(f"{value!r} is not one of {list(node.values)!r}")
        case ArraySchema():
            if not isinstance(value, list):
                return fail(f"expected array, got {_type_name(value)}")
            if node.min_items is not None and len(value) < node.min_items:
                fail(f"expected at least {node.min_items} item(s), got {len(value)}")
            if node.max_items is not None and len(value) > node.max_items:
                fail(f"expected at most {node.max_items} item(s), got {len(value)}")
            if node.items is not None:
                for i, item in enumerate(value):
                    _check(node.items, item, f"{path}[{i}]", out)
        case ObjectSchema():
            if not isinstance(value, dict):
                return fail(f"expected object, got {_type_name(value)}")
            for name in node.required:
                if name not in value:
                    out.append(FieldViolation(field=_join(path, name), reason="required field missing"))
            for key, item in value.items():
                if (child := node.properties.get(key)) is not None:
                    _check(child, item, _join(path, key), out)
                elif not node.additional_properties:
                    out.append(FieldViolation(field=_join(path, key), reason="unexpected field"))
    return None


def validate_params(schema: ParamSchema, params: Any) -> list[FieldViolation]:
    """Return every violation of ``params`` against ``schema`` (empty when valid)."""
    violations: list[FieldViolation] = []
    _check(schema, params, "", violations)
    return violations


# ═══════════════════════════════════════════════════════════════════════════════
# JSON Schema Interop (wire format for list-tools)
# ═══════════════════════════════════════════════════════════════════════════════


def to_json_schema(node: ParamSchema) -> JsonDict:
    """Render the constraint tree as a JSON Schema fragment."""
    out: JsonDict
    match node:
        case StringSchema():
            out = {"type": "string"}
            if node.min_length is not None:
                out["minLength"] = node.min_length
            if node.max_length is not None:
                out["maxLength"] = node.max_length
            if node.pattern is not None:
                out["pattern"] = node.pattern
        case NumberSchema():
            out = {"type": "integer" if node.integer else "number"}
            if node.minimum is not None:
                out["minimum"] = node.minimum
            if node.maximum is not None:
                out["maximum"] = node.maximum
        case BooleanSchema():
            out = {"type": "boolean"}
        case EnumSchema():
            out = {"enum": list(node.values)}
        case ArraySchema():
            out = {"type": "array"}
            if node.items is not None:
                out["items"] = to_json_schema(node.items)
            if node.min_items is not None:
                out["minItems"] = node.min_items
            if node.max_items is not None:
                out["maxItems"] = node.max_items
        case ObjectSchema():
            out = {
                "type": "object",
                "properties": {k: to_json_schema(v) for k, v in node.properties.items()},
                "required": list(node.required),
            }
            if not node.additional_properties:
                out["additionalProperties"] = False
    if node.nullable:
        if "type" in out:
            out["type"] = [out["type"], "null"]
        elif None not in out["enum"]:
            out["enum"].append(None)
    if node.description:
        out["description"] = node.description
    return out


_JSON_TYPES = frozenset({"string", "number", "integer", "boolean", "array", "object"})


def from_json_schema(data: Any) -> ParamSchema:
    """Build a constraint tree from a JSON Schema fragment.

    Raises:
        ValueError: On shapes the tree cannot represent (unknown/missing type,
            non-dict nodes, unions of more than one non-null type).
    """
    if not isinstance(data, dict):
        raise ValueError(f"schema node must be an object, got {_type_name(data)}")
    desc = data.get("description") if isinstance(data.get("description"), str) else None

    if "enum" in data:
        values = data["enum"]
        if not isinstance(values, list) or not values:
            raise ValueError("'enum' must be a non-empty array")
        return EnumSchema(values=tuple(values), description=desc)

    kind = data.get("type", "object" if "properties" in data else None)
    nullable = False
    if isinstance(kind, list):
        named = [t for t in kind if t != "null"]
        if len(named) != 1:
            raise ValueError(f"unsupported union type: {kind!r}")
        kind, nullable = named[0], len(named) < len(kind)
    if not isinstance(kind, str) or kind not in _JSON_TYPES:
        raise ValueError(f"unsupported schema type: {kind!r}")

    match kind:
        case "string":
            return StringSchema(
                min_length=data.get("minLength"), max_length=data.get("maxLength"),
                pattern=data.get("pattern"), description=desc, nullable=nullable,
            )
        case "number" | "integer":
            return NumberSchema(
                integer=kind == "integer", minimum=data.get("minimum"),
                maximum=data.get("maximum"), description=desc, nullable=nullable,
            )
        case "boolean":
            return BooleanSchema(description=desc, nullable=nullable)
        case "array":
            items = data.get("items")
            return ArraySchema(
                items=from_json_schema(items) if items is not None else None,
                min_items=data.get("minItems"), max_items=data.get("maxItems"), description=desc,
                nullable=nullable,
            )
    props = data.get("properties") or {}
    required = data.get("required") or []
    if not isinstance(props, dict) or not isinstance(required, list):
        raise ValueError("'properties' must be an object and 'required' an array")
    return ObjectSchema(
        properties={str(k): from_json_schema(v) for k, v in props.items()},
        required=tuple(str(r) for r in required),
        additional_properties=data.get("additionalProperties", True) is not False,
        description=desc,
        nullable=nullable,
    )
