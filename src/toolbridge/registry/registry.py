"""Tool registry: descriptors per server, parameter validation, discovery.

The registry provides:
- Registration with version-gated overwrite (schemas never change in place)
- Lookup by (server_id, tool_name) and schema version pinning
- Parameter validation against the descriptor's constraint tree
- Discovery of remote tools with partial success (bad entries are skipped)

All mutation happens under a lock so the registry can be shared by
concurrent invocations and a background discovery.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from toolbridge.core.models import ToolDescriptor
from toolbridge.core.schema import ObjectSchema, from_json_schema, validate_params
from toolbridge.foundation.errors import (
    DuplicateTool,
    GatewayError,
    JsonDict,
    SchemaVersionMismatch,
    SchemaViolation,
    ToolNotFound,
)
from toolbridge.observability import get_logger

log = get_logger("toolbridge.registry")


@runtime_checkable
class ToolSource(Protocol):
    """Anything that can fetch a peer's raw list-tools entries."""

    async def fetch_tools(self, server_id: str) -> list[Any]: ...


@dataclass(slots=True)
class SkippedEntry:
    index: int
    name: str | None
    reason: str


@dataclass(slots=True)
class DiscoveryReport:
    """Outcome of one discovery pass against a server."""

    server_id: str
    registered: list[str] = field(default_factory=list)
    skipped: list[SkippedEntry] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.skipped


def descriptor_from_wire(server_id: str, entry: Any) -> ToolDescriptor:
    """Parse one list-tools entry.

    Accepts the native ``parameters`` key and the MCP ``inputSchema`` spelling.
    A missing schema means a tool without parameters.

    Raises:
        ValueError: Malformed entry (pydantic ValidationError included).
    """
    if not isinstance(entry, dict):
        raise ValueError(f"entry must be an object, got {type(entry).__name__}")
    raw_schema = entry.get("parameters", entry.get("inputSchema"))
    schema = ObjectSchema() if raw_schema is None else from_json_schema(raw_schema)
    return ToolDescriptor(
        name=entry.get("name"),
        description=entry.get("description") or "",
        param_schema=schema,
        server_id=server_id,
        version=entry.get("version", 1),
        cacheable=bool(entry.get("cacheable", False)),
        cache_ttl=entry.get("cache_ttl"),
    )


class ToolRegistry:
    """Catalog of tool descriptors keyed by server then tool name.

    Example:
        >>> registry = ToolRegistry()
        >>> registry.register("jira", ToolDescriptor(name="create_task", server_id="jira", ...))
        >>> registry.validate("jira", "create_task", {"title": "Fix login"})
        >>> report = await registry.discover("jira")
    """

    __slots__ = ("_tools", "_lock", "_source")

    def __init__(self, source: ToolSource | None = None) -> None:
        self._tools: dict[str, dict[str, ToolDescriptor]] = {}
        self._lock = threading.RLock()
        self._source = source

    def bind_source(self, source: ToolSource) -> None:
        self._source = source

    # ─────────────────────────────────────────────────────────────────
    # Registration
    # ─────────────────────────────────────────────────────────────────

    def register(self, server_id: str, descriptor: ToolDescriptor, *, overwrite: bool = False) -> bool:
        """Add a descriptor. Returns True when the catalog changed.

        Re-registering an identical schema is a no-op. A different schema
        requires ``overwrite=True`` and a strictly higher version.

        Raises:
            DuplicateTool: Schema differs and the overwrite rule is not met.
        """
        if descriptor.server_id != server_id:
            descriptor = descriptor.model_copy(update={"server_id": server_id})
        with self._lock:
            tools = self._tools.setdefault(server_id, {})
            existing = tools.get(descriptor.name)
            if existing is not None:
                if existing == descriptor or (existing.same_schema(descriptor) and existing.version == descriptor.version):
                    return False
                if not overwrite:
                    raise DuplicateTool(
                        f"Tool '{descriptor.name}' already registered on '{server_id}'; pass overwrite=True "
                        f"with a version above {existing.version} to replace it",
                        details={"tool": descriptor.name, "server_id": server_id, "version": existing.version},
                    )
                if descriptor.version <= existing.version:
                    raise DuplicateTool(
                        f"Overwriting '{descriptor.name}' requires version > {existing.version}, got {descriptor.version}",
                        details={"tool": descriptor.name, "server_id": server_id, "version": existing.version},
                    )
            tools[descriptor.name] = descriptor
        log.info("tool.registered", server_id=server_id, tool=descriptor.name, version=descriptor.version)
        return True

    def unregister(self, server_id: str, tool_name: str) -> bool:
        """Remove a tool. Returns True if found."""
        with self._lock:
            tools = self._tools.get(server_id)
            if not tools or tools.pop(tool_name, None) is None:
                return False
            if not tools:
                del self._tools[server_id]
            return True

    # ─────────────────────────────────────────────────────────────────
    # Lookup & Validation
    # ─────────────────────────────────────────────────────────────────

    def lookup(self, server_id: str, tool_name: str) -> ToolDescriptor:
        with self._lock:
            descriptor = self._tools.get(server_id, {}).get(tool_name)
        if descriptor is None:
            raise ToolNotFound(tool_name, server_id)
        return descriptor

    def get(self, server_id: str, tool_name: str) -> ToolDescriptor | None:
        with self._lock:
            return self._tools.get(server_id, {}).get(tool_name)

    def check_version(self, server_id: str, tool_name: str, version: int | None) -> ToolDescriptor:
        """Lookup, rejecting a caller pinned to a schema version we don't hold."""
        descriptor = self.lookup(server_id, tool_name)
        if version is not None and version != descriptor.version:
            raise SchemaVersionMismatch(
                f"Tool '{tool_name}' is at schema version {descriptor.version}, caller requested {version}",
                details={"tool": tool_name, "server_id": server_id,
                         "requested": version, "current": descriptor.version},
            )
        return descriptor

    def validate(self, server_id: str, tool_name: str, params: Any) -> ToolDescriptor:
        """Check params against the tool's schema.

        Raises:
            ToolNotFound: Unknown tool.
            SchemaViolation: Carrying every violating field, not just the first.
        """
        descriptor = self.lookup(server_id, tool_name)
        if violations := validate_params(descriptor.param_schema, params):
            raise SchemaViolation(violations, tool_name=tool_name)
        return descriptor

    # ─────────────────────────────────────────────────────────────────
    # Discovery
    # ─────────────────────────────────────────────────────────────────

    async def discover(self, server_id: str, source: ToolSource | None = None) -> DiscoveryReport:
        """Fetch a server's tool list and merge every valid entry.

        Malformed entries are skipped and logged; the rest still register.
        A rediscovered tool replaces the old one only on a version bump.

        Raises:
            GatewayError: The list-tools call itself failed.
        """
        if (src := source or self._source) is None:
            raise GatewayError("No tool source configured for discovery", details={"server_id": server_id})
        entries = await src.fetch_tools(server_id)
        report = DiscoveryReport(server_id)
        for i, entry in enumerate(entries):
            name = entry.get("name") if isinstance(entry, dict) else None
            try:
                descriptor = descriptor_from_wire(server_id, entry)
                self.register(server_id, descriptor, overwrite=True)
            except Exception as e:  # noqa: BLE001 - reported as a skipped entry
                reason = _reason(e)
                report.skipped.append(SkippedEntry(i, name, reason))
                log.warning("discovery.entry_skipped", server_id=server_id, index=i, tool=name, reason=reason)
                continue
            report.registered.append(descriptor.name)
        log.info("discovery.completed", server_id=server_id,
                 registered=len(report.registered), skipped=len(report.skipped))
        return report

    # ─────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────

    def tools(self, server_id: str | None = None) -> list[ToolDescriptor]:
        with self._lock:
            if server_id is not None:
                return list(self._tools.get(server_id, {}).values())
            return [d for tools in self._tools.values() for d in tools.values()]

    def servers(self) -> list[str]:
        with self._lock:
            return list(self._tools)

    def catalog(self, server_id: str) -> list[JsonDict]:
        """Wire-format entries for a server's tools."""
        return [d.to_wire() for d in self.tools(server_id)]

    def __contains__(self, key: object) -> bool:
        if not (isinstance(key, tuple) and len(key) == 2):
            return False
        return self.get(*key) is not None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(t) for t in self._tools.values())

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self.tools())


def _reason(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<entry>'}: {err['msg']}" for err in exc.errors()
        )
    return str(exc) or type(exc).__name__
