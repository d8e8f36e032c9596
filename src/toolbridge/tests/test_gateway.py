"""Tests for settings loading and the Gateway's lifecycle and introspection."""

import httpx
import orjson
import pytest
from pydantic import ValidationError

from toolbridge.auth import BearerAuth
from toolbridge.core.models import ServerEndpoint, ToolDescriptor
from toolbridge.foundation.config import GatewaySettings, RetrySettings, clear_settings_cache, get_settings
from toolbridge.foundation.errors import ErrorCode
from toolbridge.gateway import Gateway
from toolbridge.observability import CaptureRenderer
from toolbridge.testing import StubTransport


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test nested sections and endpoints load from TOOLBRIDGE_ variables."""
    monkeypatch.setenv("TOOLBRIDGE_SERVER_ID", "billing")
    monkeypatch.setenv("TOOLBRIDGE_ENVIRONMENT", "PRODUCTION")
    monkeypatch.setenv("TOOLBRIDGE_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TOOLBRIDGE_BREAKER_COOLDOWN", "30")
    monkeypatch.setenv("TOOLBRIDGE_ENDPOINTS", orjson.dumps(
        [{"id": "jira", "base_address": "https://jira.example.com", "auth": {"scheme": "bearer", "token": "sk-1"}}],
    ).decode())

    s = GatewaySettings(_env_file=None)
    assert s.server_id == "billing"
    assert s.is_production
    assert s.retry.max_attempts == 5
    assert s.breaker.cooldown == 30.0
    [jira] = s.endpoints
    assert isinstance(jira.auth, BearerAuth)
    assert jira.auth.token.get_secret_value() == "sk-1"


def test_settings_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test get_settings is cached until cleared."""
    clear_settings_cache()
    monkeypatch.setenv("TOOLBRIDGE_SERVER_ID", "first")
    assert get_settings().server_id == "first"
    monkeypatch.setenv("TOOLBRIDGE_SERVER_ID", "second")
    assert get_settings().server_id == "first"
    clear_settings_cache()
    assert get_settings().server_id == "second"
    clear_settings_cache()


def test_duplicate_endpoint_ids_rejected() -> None:
    """Test two endpoints may not share an id."""
    with pytest.raises(ValidationError, match="Duplicate endpoint ids"):
        GatewaySettings(endpoints=[
            ServerEndpoint(id="jira", base_address="http://a.test"),
            ServerEndpoint(id="jira", base_address="http://b.test"),
        ])


@pytest.mark.parametrize("field", ["max_attempts", "jitter"])
def test_retry_bounds_validated(field: str) -> None:
    """Test out-of-range retry settings fail validation."""
    with pytest.raises(ValidationError):
        RetrySettings(**{field: 50})


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_context_manager_runs_janitor(settings: GatewaySettings, logs: CaptureRenderer) -> None:
    """Test entering starts background maintenance and exiting stops it."""
    async with Gateway(settings, transport=StubTransport()) as gw:
        assert gw.running
    assert not gw.running
    assert [e for e in logs.events() if e.startswith("gateway.")] == ["gateway.started", "gateway.stopped"]


@pytest.mark.asyncio
async def test_start_with_discovery(settings: GatewaySettings) -> None:
    """Test start(discover=True) fills the registry from every endpoint."""
    stub = StubTransport(tools={"jira": [{"name": "create_task"}, {"name": "get_task"}]})
    gw = Gateway(settings, transport=stub)
    await gw.start(discover=True)
    assert sorted(d.name for d in gw.registry.tools("jira")) == ["create_task", "get_task"]
    await gw.stop()


@pytest.mark.asyncio
async def test_add_endpoint_drops_cached_credentials(gateway: Gateway, stub: StubTransport) -> None:
    """Test replacing an endpoint invalidates its token and routes new calls."""
    stub.defaults["lookup"] = {"id": 7}
    gateway.add_endpoint(ServerEndpoint(id="crm", base_address="http://crm.test"))
    gateway.registry.register("crm", ToolDescriptor(name="lookup", server_id="crm"))
    result = await gateway.invoke("crm", "lookup", {})
    assert result.ok
    assert gateway.auth.cached("crm") is None


@pytest.mark.asyncio
async def test_gateways_share_nothing(settings: GatewaySettings) -> None:
    """Test two gateways in one process keep separate registries and breakers."""
    a = Gateway(settings, transport=StubTransport())
    b = Gateway(settings.model_copy(update={"server_id": "other"}), transport=StubTransport())
    a.registry.register("jira", ToolDescriptor(name="create_task", server_id="jira"))
    a.breakers.get("jira")

    assert "jira" not in b.registry.servers()
    assert b.breakers.snapshot() == {}
    await a.stop()
    await b.stop()


@pytest.mark.asyncio
async def test_health_report(gateway: Gateway, stub: StubTransport) -> None:
    """Test health exposes tool count, circuits, pending records and cache stats."""
    stub.defaults["create_task"] = {"id": "T-1"}

    @gateway.tool
    def ping() -> str:
        return "pong"

    await gateway.invoke("jira", "create_task", {"title": "Fix login"})
    report = gateway.health()
    assert report["status"] == "ok"
    assert report["server"] == "local"
    assert report["tools"] == 1
    assert "jira" in report["circuits"]
    assert report["pending"] == 0
    assert "cache" in report
    assert "pools" not in report


@pytest.mark.asyncio
async def test_default_transport_leases_from_gateway_pool(settings: GatewaySettings) -> None:
    """Test the HTTP transport uses the gateway's configured pool while it is still empty."""
    gw = Gateway(settings, http_transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"result": {}})))
    assert len(gw.pool) == 0
    assert gw.transport.pool is gw.pool

    gw.registry.register("jira", ToolDescriptor(name="get_task", server_id="jira"))
    assert (await gw.invoke("jira", "get_task", {})).ok
    assert "jira" in gw.pool
    await gw.stop()


@pytest.mark.asyncio
async def test_blank_remote_error_message(settings: GatewaySettings) -> None:
    """Test a peer error with a whitespace-only message still yields a failure result."""
    blank = httpx.MockTransport(
        lambda r: httpx.Response(400, json={"error": {"code": "QUOTA_EXCEEDED", "message": "   "}}),
    )
    gw = Gateway(settings, http_transport=blank)
    gw.registry.register("jira", ToolDescriptor(name="get_task", server_id="jira"))

    result = await gw.invoke("jira", "get_task", {})
    assert result.error is not None
    assert result.error.code is ErrorCode.REMOTE_APPLICATION_ERROR
    assert result.error.message == "Remote error"
    await gw.stop()
