"""Tests for backoff, the deadline-aware retry loop, and retries through the gateway."""

import asyncio
import time

import pytest

from toolbridge.foundation.errors import (
    ErrorCode,
    RemoteApplicationError,
    SchemaViolation,
    TransportConnectionError,
    TransportTimeout,
)
from toolbridge.gateway import Gateway
from toolbridge.observability import CaptureRenderer
from toolbridge.resilience import ConstantBackoff, ExponentialBackoff, RetryPolicy, execute_with_retry
from toolbridge.testing import StubTransport

FAST = RetryPolicy(max_attempts=3, backoff=ConstantBackoff(0.01))


class Flaky:
    """Operation failing ``n`` times with ``error`` before returning ``value``."""

    def __init__(self, n: int, error: Exception, value: object = "ok") -> None:
        self.n, self.error, self.value = n, error, value
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.calls <= self.n:
            raise self.error
        return self.value


# ─────────────────────────────────────────────────────────────────────────────
# Backoff
# ─────────────────────────────────────────────────────────────────────────────


def test_exponential_backoff_without_jitter() -> None:
    """Test delays grow by the multiplier and stop at the cap."""
    backoff = ExponentialBackoff(base=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)
    assert [backoff.delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_exponential_backoff_jitter_bounds() -> None:
    """Test jittered delays stay within the configured spread."""
    backoff = ExponentialBackoff(base=1.0, jitter=0.2)
    delays = [backoff.delay(0) for _ in range(200)]
    assert all(0.8 <= d <= 1.2 for d in delays)
    assert len(set(delays)) > 1


def test_policy_retries_only_transient() -> None:
    """Test should_retry respects both error class and attempt budget."""
    policy = RetryPolicy(max_attempts=3)
    assert policy.should_retry(TransportTimeout("slow"), 0)
    assert policy.should_retry(RemoteApplicationError("503", status=503, transient=True), 1)
    assert not policy.should_retry(TransportTimeout("slow"), 2)
    assert not policy.should_retry(RemoteApplicationError("bad request", status=400), 0)
    assert not policy.should_retry(SchemaViolation.single("title", "required field missing"), 0)


# ─────────────────────────────────────────────────────────────────────────────
# Retry loop
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_succeeds_on_third_attempt(logs: CaptureRenderer) -> None:
    """Test transient failures are retried until success."""
    op = Flaky(2, TransportConnectionError("reset"))
    retries: list[int] = []
    policy = FAST.model_copy(update={"on_retry": lambda attempt, err, delay: retries.append(attempt)})

    assert await execute_with_retry(op, policy, deadline=time.monotonic() + 5) == "ok"
    assert op.calls == 3
    assert retries == [0, 1]
    assert len(logs.find("retry.scheduled")) == 2


@pytest.mark.asyncio
async def test_non_transient_not_retried() -> None:
    """Test a non-transient failure is raised after one attempt."""
    op = Flaky(5, RemoteApplicationError("bad input", status=400))
    with pytest.raises(RemoteApplicationError, match="bad input"):
        await execute_with_retry(op, FAST, deadline=time.monotonic() + 5)
    assert op.calls == 1


@pytest.mark.asyncio
async def test_exhausted_attempts_are_terminal() -> None:
    """Test the last transient cause is wrapped once attempts run out."""
    op = Flaky(5, TransportConnectionError("reset"))
    with pytest.raises(RemoteApplicationError) as exc_info:
        await execute_with_retry(op, FAST, deadline=time.monotonic() + 5)
    err = exc_info.value
    assert op.calls == 3
    assert err.transient is False
    assert isinstance(err.cause, TransportConnectionError)
    assert err.details["attempts"] == 3
    assert err.details["cause"]["code"] == ErrorCode.TRANSPORT_CONNECTION_ERROR


@pytest.mark.asyncio
async def test_foreign_exceptions_are_classified() -> None:
    """Test builtin connection errors count as transient transport failures."""
    op = Flaky(1, ConnectionResetError("peer reset"))
    assert await execute_with_retry(op, FAST, deadline=time.monotonic() + 5) == "ok"
    assert op.calls == 2


@pytest.mark.asyncio
async def test_backoff_never_sleeps_past_deadline() -> None:
    """Test a backoff longer than the remaining budget ends in TransportTimeout at once."""
    op = Flaky(5, TransportConnectionError("reset"))
    policy = RetryPolicy(max_attempts=5, backoff=ConstantBackoff(1.0))
    start = time.monotonic()
    with pytest.raises(TransportTimeout) as exc_info:
        await execute_with_retry(op, policy, deadline=start + 0.2)
    assert time.monotonic() - start < 0.15
    assert op.calls == 1
    assert exc_info.value.details["cause"]["code"] == ErrorCode.TRANSPORT_CONNECTION_ERROR


@pytest.mark.asyncio
async def test_attempt_timeout_bounds_each_attempt() -> None:
    """Test a hung attempt is cut off by the per-attempt timeout and retried."""
    calls = 0

    async def op() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(5)
        return "ok"

    start = time.monotonic()
    assert await execute_with_retry(op, FAST, deadline=start + 5, attempt_timeout=0.05) == "ok"
    assert calls == 2
    assert time.monotonic() - start < 1.0


# ─────────────────────────────────────────────────────────────────────────────
# Through the gateway
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_gateway_retries_transient_failures(gateway: Gateway, stub: StubTransport) -> None:
    """Test a call that fails twice then succeeds makes exactly three sends."""
    stub.fail_times("create_task", 2, lambda: TransportConnectionError("reset"), {"id": "T-1"})
    result = await gateway.invoke("jira", "create_task", {"title": "Fix login"})
    assert result.ok
    assert result.data == {"id": "T-1"}
    assert stub.call_count("create_task") == 3
    assert len({c.request_id for c in stub.calls}) == 1


@pytest.mark.asyncio
async def test_gateway_reports_terminal_failure(gateway: Gateway, stub: StubTransport) -> None:
    """Test exhausted retries surface as REMOTE_APPLICATION_ERROR with the cause."""
    stub.defaults["create_task"] = TransportConnectionError("reset")
    result = await gateway.invoke("jira", "create_task", {"title": "Fix login"})
    assert result.error is not None
    assert result.error.code is ErrorCode.REMOTE_APPLICATION_ERROR
    assert result.error.retryable is False
    assert result.error.details["attempts"] == 3
    assert stub.call_count() == 3


@pytest.mark.asyncio
async def test_gateway_deadline_is_a_hard_ceiling(gateway: Gateway, stub: StubTransport) -> None:
    """Test a 100ms deadline against a slow peer returns TransportTimeout near 100ms."""
    stub.latency = 5.0
    stub.defaults["create_task"] = {"id": "T-1"}
    start = time.monotonic()
    result = await gateway.invoke("jira", "create_task", {"title": "Fix login"}, timeout=0.1)
    elapsed = time.monotonic() - start
    assert result.error is not None
    assert result.error.code is ErrorCode.TRANSPORT_TIMEOUT
    assert 0.09 <= elapsed < 0.5
    assert stub.call_count() == 1


@pytest.mark.asyncio
async def test_create_task_scenario(gateway: Gateway, stub: StubTransport) -> None:
    """Test the missing title is named, then two resets and a success take base_delay * 3."""
    missing = await gateway.invoke("jira", "create_task", {})
    assert missing.error is not None
    assert missing.error.code is ErrorCode.SCHEMA_VIOLATION
    assert [v["field"] for v in missing.error.details["violations"]] == ["title"]
    assert stub.call_count() == 0

    stub.fail_times("create_task", 2, lambda: TransportConnectionError("reset"), {"id": "T-1"})
    start = time.monotonic()
    result = await gateway.invoke("jira", "create_task", {"title": "Buy milk"})
    elapsed = time.monotonic() - start
    assert result.ok
    assert stub.call_count("create_task") == 3
    # base_delay 0.01 with no jitter: 0.01 + 0.02
    assert 0.025 <= elapsed < 0.5
