"""Tests for per-server circuit breaking."""

import pytest

from toolbridge.foundation.errors import (
    CircuitOpen,
    ErrorCode,
    RemoteApplicationError,
    SchemaViolation,
    TransportConnectionError,
    TransportTimeout,
)
from toolbridge.gateway import Gateway
from toolbridge.observability import CaptureRenderer
from toolbridge.resilience import CircuitBreaker, CircuitBreakers, State, counts_as_failure
from toolbridge.testing import StubTransport


def fail(breaker: CircuitBreaker, times: int = 1) -> None:
    for _ in range(times):
        breaker.acquire()
        breaker.record(TransportTimeout("slow"))


def test_counts_as_failure() -> None:
    """Test only server-health failures count against the breaker."""
    assert counts_as_failure(TransportTimeout("slow"))
    assert counts_as_failure(TransportConnectionError("reset"))
    assert counts_as_failure(RemoteApplicationError("503", status=503, transient=True))
    assert counts_as_failure(RemoteApplicationError.terminal(TransportConnectionError("reset"), 3))
    assert not counts_as_failure(RemoteApplicationError("bad input", status=400))
    assert not counts_as_failure(SchemaViolation.single("title", "required field missing"))


def test_opens_after_threshold(clock, logs: CaptureRenderer) -> None:
    """Test consecutive failures at the threshold open the circuit."""
    breaker = CircuitBreaker("jira", failure_threshold=3, cooldown=10.0, clock=clock)
    fail(breaker, 2)
    assert breaker.state is State.CLOSED
    fail(breaker)
    assert breaker.state is State.OPEN
    assert breaker.retry_after == pytest.approx(10.0)
    assert logs.find("circuit.opened")[0].context["consecutive_failures"] == 3

    with pytest.raises(CircuitOpen) as exc_info:
        breaker.acquire()
    assert exc_info.value.details["server_id"] == "jira"


def test_success_resets_failure_count(clock) -> None:
    """Test a success in between keeps the circuit closed."""
    breaker = CircuitBreaker("jira", failure_threshold=3, clock=clock)
    fail(breaker, 2)
    breaker.acquire()
    breaker.record_success()
    fail(breaker, 2)
    assert breaker.state is State.CLOSED
    assert breaker.consecutive_failures == 2


def test_non_health_failures_are_neutral(clock) -> None:
    """Test application errors neither trip nor reset the count."""
    breaker = CircuitBreaker("jira", failure_threshold=2, clock=clock)
    fail(breaker)
    for _ in range(5):
        breaker.acquire()
        breaker.record(RemoteApplicationError("bad input", status=400))
    assert breaker.state is State.CLOSED
    assert breaker.consecutive_failures == 1


def test_half_open_success_closes(clock, logs: CaptureRenderer) -> None:
    """Test the first call after cooldown is a trial that closes the circuit on success."""
    breaker = CircuitBreaker("jira", failure_threshold=1, cooldown=10.0, clock=clock)
    fail(breaker)
    clock.advance(10.0)
    assert breaker.state is State.HALF_OPEN

    breaker.acquire()
    with pytest.raises(CircuitOpen):
        breaker.acquire()  # only one trial at a time
    breaker.record_success()

    assert breaker.state is State.CLOSED
    assert logs.events("circuit.") == ["circuit.opened", "circuit.half_open", "circuit.closed"]


def test_half_open_failure_reopens(clock) -> None:
    """Test a failed trial reopens the circuit for a fresh cooldown."""
    breaker = CircuitBreaker("jira", failure_threshold=1, cooldown=10.0, clock=clock)
    fail(breaker)
    clock.advance(10.0)
    fail(breaker)
    assert breaker.state is State.OPEN
    assert breaker.retry_after == pytest.approx(10.0)


def test_release_frees_half_open_trial(clock) -> None:
    """Test a trial ending without a verdict lets the next call through."""
    breaker = CircuitBreaker("jira", failure_threshold=1, cooldown=10.0, clock=clock)
    fail(breaker)
    clock.advance(10.0)
    breaker.acquire()
    breaker.record(SchemaViolation.single("title", "required field missing"))
    breaker.acquire()
    assert breaker.state is State.HALF_OPEN


def test_breakers_are_per_server(clock) -> None:
    """Test one server's failures do not affect another's circuit."""
    breakers = CircuitBreakers(failure_threshold=1, cooldown=10.0, clock=clock)
    fail(breakers.get("jira"))
    breakers.get("linear").acquire()
    assert breakers.snapshot()["jira"]["state"] == "open"
    assert breakers.snapshot()["linear"]["state"] == "closed"
    breakers.reset("jira")
    assert breakers.get("jira").state is State.CLOSED


@pytest.mark.asyncio
async def test_open_circuit_skips_transport(gateway: Gateway, stub: StubTransport) -> None:
    """Test an open circuit fails fast without contacting the peer."""
    stub.defaults["create_task"] = TransportConnectionError("reset")
    for _ in range(3):
        result = await gateway.invoke("jira", "create_task", {"title": "Fix login"})
        assert result.error is not None and result.error.code is ErrorCode.REMOTE_APPLICATION_ERROR
    sent = stub.call_count()

    result = await gateway.invoke("jira", "create_task", {"title": "Fix login"})

    assert result.error is not None
    assert result.error.code is ErrorCode.CIRCUIT_OPEN
    assert stub.call_count() == sent
    assert gateway.health()["circuits"]["jira"]["state"] == "open"
