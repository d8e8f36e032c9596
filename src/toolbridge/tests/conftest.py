"""Shared fixtures: fast settings, isolated logging, scripted transports."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio

from toolbridge.core.models import ServerEndpoint, ToolDescriptor
from toolbridge.core.schema import EnumSchema, ObjectSchema, StringSchema
from toolbridge.foundation.config import (
    BreakerSettings,
    CacheSettings,
    GatewaySettings,
    HttpSettings,
    RetrySettings,
)
from toolbridge.gateway import Gateway
from toolbridge.observability import CaptureRenderer, NoOpRenderer, configure_logging
from toolbridge.observability.logging import _state
from toolbridge.testing import StubTransport


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def quiet_logging() -> Iterator[None]:
    """Silence log output and restore the previous global configuration afterwards."""
    previous = (_state.renderer, _state.level)
    configure_logging(renderer=NoOpRenderer())
    yield
    _state.renderer, _state.level = previous


@pytest.fixture
def logs() -> CaptureRenderer:
    """Capture structured log entries emitted during the test."""
    renderer = CaptureRenderer()
    configure_logging(level="DEBUG", renderer=renderer)
    return renderer


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> GatewaySettings:
    """Gateway settings with millisecond backoff and one configured peer."""
    return GatewaySettings(
        server_id="local",
        retry=RetrySettings(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=0.0),
        breaker=BreakerSettings(failure_threshold=3, cooldown=60.0),
        cache=CacheSettings(enabled=True, ttl=60.0),
        http=HttpSettings(request_timeout=5.0, default_deadline=5.0),
        endpoints=[ServerEndpoint(id="jira", base_address="http://jira.test")],
    )


@pytest.fixture
def create_task_schema() -> ObjectSchema:
    return ObjectSchema(
        properties={
            "title": StringSchema(min_length=1),
            "priority": EnumSchema(values=("low", "high")),
        },
        required=("title",),
    )


@pytest.fixture
def create_task(create_task_schema: ObjectSchema) -> ToolDescriptor:
    return ToolDescriptor(name="create_task", description="Create a task", param_schema=create_task_schema,
                          server_id="jira")


@pytest.fixture
def stub() -> StubTransport:
    return StubTransport()


@pytest_asyncio.fixture
async def gateway(settings: GatewaySettings, stub: StubTransport, create_task: ToolDescriptor) -> AsyncIterator[Gateway]:
    """Gateway over a StubTransport with ``create_task`` registered for ``jira``."""
    gw = Gateway(settings, transport=stub)
    gw.registry.register("jira", create_task)
    yield gw
    await gw.stop()
