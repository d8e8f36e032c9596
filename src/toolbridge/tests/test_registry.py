"""Tests for the tool registry: registration rules, lookup, versioning and discovery."""

from typing import Any

import pytest

from toolbridge.core.models import ToolDescriptor
from toolbridge.core.schema import NumberSchema, ObjectSchema, StringSchema
from toolbridge.foundation.errors import (
    DuplicateTool,
    GatewayError,
    SchemaVersionMismatch,
    SchemaViolation,
    ToolNotFound,
)
from toolbridge.gateway import Gateway
from toolbridge.observability import CaptureRenderer
from toolbridge.registry import ToolRegistry, descriptor_from_wire
from toolbridge.testing import StubTransport


class ListSource:
    """ToolSource returning a fixed list per server."""

    def __init__(self, entries: dict[str, list[Any]]) -> None:
        self.entries = entries
        self.calls: list[str] = []

    async def fetch_tools(self, server_id: str) -> list[Any]:
        self.calls.append(server_id)
        return self.entries[server_id]


def test_register_and_lookup(create_task: ToolDescriptor) -> None:
    """Test a registered descriptor is found by server and name."""
    registry = ToolRegistry()
    assert registry.register("jira", create_task) is True
    assert registry.lookup("jira", "create_task") == create_task
    assert ("jira", "create_task") in registry
    assert len(registry) == 1


def test_register_identical_is_noop(create_task: ToolDescriptor) -> None:
    """Test re-registering the same schema changes nothing."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    assert registry.register("jira", create_task) is False
    assert len(registry) == 1


def test_register_different_schema_raises(create_task: ToolDescriptor) -> None:
    """Test a different schema under the same name is a DuplicateTool."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    changed = create_task.model_copy(update={"param_schema": ObjectSchema(properties={"id": NumberSchema()})})
    with pytest.raises(DuplicateTool):
        registry.register("jira", changed)


def test_overwrite_requires_version_bump(create_task: ToolDescriptor) -> None:
    """Test overwrite replaces only with a strictly higher version."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    schema = ObjectSchema(properties={"summary": StringSchema()}, required=("summary",))

    with pytest.raises(DuplicateTool, match="requires version > 1"):
        registry.register("jira", create_task.model_copy(update={"param_schema": schema}), overwrite=True)

    v2 = create_task.model_copy(update={"param_schema": schema, "version": 2})
    assert registry.register("jira", v2, overwrite=True) is True
    assert registry.lookup("jira", "create_task").version == 2


def test_same_name_on_different_servers(create_task: ToolDescriptor) -> None:
    """Test tool names are scoped per server."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    registry.register("linear", create_task)
    assert registry.lookup("linear", "create_task").server_id == "linear"
    assert sorted(registry.servers()) == ["jira", "linear"]


def test_lookup_unknown_tool() -> None:
    """Test lookup of an unregistered tool raises ToolNotFound."""
    with pytest.raises(ToolNotFound) as exc_info:
        ToolRegistry().lookup("jira", "missing")
    assert exc_info.value.details == {"tool": "missing", "server_id": "jira"}


def test_unregister(create_task: ToolDescriptor) -> None:
    """Test unregister removes the tool and reports whether it existed."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    assert registry.unregister("jira", "create_task") is True
    assert registry.unregister("jira", "create_task") is False
    assert registry.get("jira", "create_task") is None


def test_check_version(create_task: ToolDescriptor) -> None:
    """Test a caller pinned to another schema version is rejected."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    assert registry.check_version("jira", "create_task", None) == create_task
    assert registry.check_version("jira", "create_task", 1) == create_task
    with pytest.raises(SchemaVersionMismatch) as exc_info:
        registry.check_version("jira", "create_task", 2)
    assert exc_info.value.details["current"] == 1


def test_validate_lists_every_field(create_task: ToolDescriptor) -> None:
    """Test validate raises SchemaViolation naming all violating fields."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    with pytest.raises(SchemaViolation) as exc_info:
        registry.validate("jira", "create_task", {"priority": "urgent"})
    assert exc_info.value.fields == ["title", "priority"]
    assert "create_task" in exc_info.value.message


def test_descriptor_from_wire_accepts_input_schema() -> None:
    """Test list-tools entries may use ``parameters`` or ``inputSchema``."""
    schema = {"type": "object", "properties": {"id": {"type": "integer"}}, "required": ["id"]}
    native = descriptor_from_wire("jira", {"name": "get_task", "parameters": schema})
    mcp = descriptor_from_wire("jira", {"name": "get_task", "inputSchema": schema})
    assert native.param_schema == mcp.param_schema
    assert native.server_id == "jira"


@pytest.mark.asyncio
async def test_discover_partial_success(logs: CaptureRenderer) -> None:
    """Test malformed entries are skipped while valid ones register."""
    source = ListSource({"jira": [
        {"name": "create_task", "description": "Create a task",
         "inputSchema": {"type": "object", "properties": {"title": {"type": "string"}}, "required": ["title"]}},
        {"name": "bad name!"},
        {"name": "weird", "parameters": {"type": "null"}},
        "not-an-object",
        {"name": "get_task", "cacheable": True},
    ]})
    registry = ToolRegistry(source)

    report = await registry.discover("jira")

    assert report.registered == ["create_task", "get_task"]
    assert [s.index for s in report.skipped] == [1, 2, 3]
    assert report.skipped[1].name == "weird"
    assert not report.complete
    assert registry.lookup("jira", "get_task").cacheable is True
    assert len(logs.find("discovery.entry_skipped")) == 3
    assert logs.find("discovery.completed")[0].context["registered"] == 2


@pytest.mark.asyncio
async def test_rediscovery_keeps_version_unless_bumped() -> None:
    """Test a changed schema at the same version is skipped; a bump replaces it."""
    entry = {"name": "get_task", "parameters": {"type": "object", "properties": {"id": {"type": "integer"}}}}
    source = ListSource({"jira": [entry]})
    registry = ToolRegistry(source)
    await registry.discover("jira")

    source.entries["jira"] = [{**entry, "parameters": {"type": "object", "properties": {"key": {"type": "string"}}}}]
    report = await registry.discover("jira")
    assert report.registered == [] and len(report.skipped) == 1

    source.entries["jira"] = [{**source.entries["jira"][0], "version": 2}]
    report = await registry.discover("jira")
    assert report.registered == ["get_task"]
    assert registry.lookup("jira", "get_task").version == 2


@pytest.mark.asyncio
async def test_discover_without_source() -> None:
    """Test discovery with no source configured fails clearly."""
    with pytest.raises(GatewayError, match="No tool source"):
        await ToolRegistry().discover("jira")


@pytest.mark.asyncio
async def test_gateway_discovers_through_transport(gateway: Gateway, stub: StubTransport) -> None:
    """Test Gateway.discover lists tools over its transport."""
    stub.tools["jira"] = [{"name": "get_task", "parameters": {"type": "object", "properties": {}}}]
    report = await gateway.discover("jira")
    assert report.registered == ["get_task"]
    assert stub.list_calls == ["jira"]


def test_version_bump_without_overwrite_names_the_flag(create_task: ToolDescriptor) -> None:
    """Test a newer version of the same schema is refused with a hint to pass overwrite."""
    registry = ToolRegistry()
    registry.register("jira", create_task)
    with pytest.raises(DuplicateTool, match="overwrite=True") as exc_info:
        registry.register("jira", create_task.model_copy(update={"version": 2}))
    assert "different schema" not in exc_info.value.message


@pytest.mark.asyncio
async def test_discover_survives_unusual_schemas(logs: CaptureRenderer) -> None:
    """Test list-valued types, bad patterns and odd type values never abort a batch."""
    source = ListSource({"jira": [
        {"name": "find", "parameters": {"type": "object", "properties": {"due": {"type": ["string", "null"]}}}},
        {"name": "mixed", "parameters": {"type": "object", "properties": {"x": {"type": ["string", "integer"]}}}},
        {"name": "regex", "parameters": {"type": "object", "properties": {"q": {"type": "string", "pattern": "["}}}},
        {"name": "odd", "parameters": {"type": {"oneOf": ["string"]}}},
        {"name": "get_task"},
    ]})
    registry = ToolRegistry(source)

    report = await registry.discover("jira")

    assert report.registered == ["find", "get_task"]
    assert [s.name for s in report.skipped] == ["mixed", "regex", "odd"]
    assert "union" in report.skipped[0].reason
    assert "invalid pattern" in report.skipped[1].reason
    assert len(logs.find("discovery.entry_skipped")) == 3
    registry.validate("jira", "find", {"due": None})
    with pytest.raises(SchemaViolation):
        registry.validate("jira", "find", {"due": 3})
