"""Per-server circuit breaker.

State Machine:
    CLOSED → failure_threshold consecutive failures → OPEN
    OPEN → cooldown elapses → HALF_OPEN (exactly one trial call admitted)
    HALF_OPEN → trial succeeds → CLOSED
    HALF_OPEN → trial fails → OPEN (cooldown restarts)

Only transient failures are recorded as failures. Outcomes that say
nothing about the server's health (schema, auth, application errors) are
recorded with ``release()``, which frees a half-open trial slot without
moving the circuit.

Transitions are linearized by a per-breaker ``threading.Lock`` so one
breaker can be shared by tasks on any thread.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable

from toolbridge.foundation.errors import (
    CircuitOpen,
    RemoteApplicationError,
    TransportConnectionError,
    TransportTimeout,
)
from toolbridge.observability import get_logger

log = get_logger("toolbridge.breaker")


class State(StrEnum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal
    OPEN = "open"            # Failing fast
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(slots=True)
class CircuitState:
    """Per-server circuit tracking."""
    server_id: str
    state: State = State.CLOSED
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    cooldown_until: float = 0.0
    trial_in_flight: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value, "consecutive_failures": self.consecutive_failures,
            "last_failure_at": self.last_failure_at, "cooldown_until": self.cooldown_until,
        }


def counts_as_failure(exc: BaseException) -> bool:
    """Whether a call's final error says the server is unhealthy."""
    if isinstance(exc, (TransportTimeout, TransportConnectionError)):
        return True
    if isinstance(exc, RemoteApplicationError):
        return exc.transient or (exc.cause is not None and counts_as_failure(exc.cause))
    return False


class CircuitBreaker:
    """Circuit breaker for one server.

    Example:
        >>> breaker = CircuitBreaker("jira", failure_threshold=3, cooldown=10.0)
        >>> breaker.acquire()          # raises CircuitOpen while failing fast
        >>> try:
        ...     data = await send()
        ... except GatewayError as e:
        ...     breaker.record(e)
        ...     raise
        >>> breaker.record_success()
    """

    __slots__ = ("server_id", "failure_threshold", "cooldown", "_clock", "_lock", "_circuit")

    def __init__(
        self,
        server_id: str,
        *,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.server_id = server_id
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._circuit = CircuitState(server_id)

    # ─────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────

    def acquire(self) -> None:
        """Admit a call or fail fast.

        Raises:
            CircuitOpen: Circuit open and cooling down, or a half-open trial
                is already in flight.
        """
        transitioned = False
        with self._lock:
            c, now = self._circuit, self._clock()
            if c.state is State.OPEN:
                if now < c.cooldown_until:
                    raise CircuitOpen(self.server_id, c.cooldown_until - now)
                c.state, transitioned = State.HALF_OPEN, True
            if c.state is State.HALF_OPEN:
                if c.trial_in_flight:
                    raise CircuitOpen(self.server_id, 0.0)
                c.trial_in_flight = True
        if transitioned:
            log.info("circuit.half_open", server_id=self.server_id)

    def record_success(self) -> None:
        closed = False
        with self._lock:
            c = self._circuit
            if c.state is State.HALF_OPEN:
                c.state, closed = State.CLOSED, True
            c.consecutive_failures, c.trial_in_flight = 0, False
        if closed:
            log.info("circuit.closed", server_id=self.server_id)

    def record_failure(self) -> None:
        opened = False
        with self._lock:
            c, now = self._circuit, self._clock()
            c.consecutive_failures += 1
            c.last_failure_at = now
            if c.state is State.HALF_OPEN or (
                c.state is State.CLOSED and c.consecutive_failures >= self.failure_threshold
            ):
                c.state, c.cooldown_until, opened = State.OPEN, now + self.cooldown, True
            c.trial_in_flight = False
            failures = c.consecutive_failures
        if opened:
            log.warning("circuit.opened", server_id=self.server_id,
                        consecutive_failures=failures, cooldown=self.cooldown)

    def release(self) -> None:
        """End a call whose outcome neither trips nor closes the circuit."""
        with self._lock:
            self._circuit.trial_in_flight = False

    def record(self, exc: BaseException) -> None:
        """Record a failed call, counting it only if it is a health failure."""
        if counts_as_failure(exc):
            self.record_failure()
        else:
            self.release()

    def reset(self) -> None:
        with self._lock:
            self._circuit = CircuitState(self.server_id)

    # ─────────────────────────────────────────────────────────────────
    # Observability Properties
    # ─────────────────────────────────────────────────────────────────

    @property
    def state(self) -> State:
        """Current state, reporting HALF_OPEN once an open circuit's cooldown has elapsed."""
        with self._lock:
            c = self._circuit
            if c.state is State.OPEN and self._clock() >= c.cooldown_until:
                return State.HALF_OPEN
            return c.state

    @property
    def consecutive_failures(self) -> int:
        return self._circuit.consecutive_failures

    @property
    def retry_after(self) -> float:
        """Seconds until an open circuit admits a trial (0 otherwise)."""
        with self._lock:
            c = self._circuit
            return max(0.0, c.cooldown_until - self._clock()) if c.state is State.OPEN else 0.0

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            data = self._circuit.to_dict()
        data["state"] = self.state.value
        return data


class CircuitBreakers:
    """One breaker per server, created on first use with shared thresholds."""

    __slots__ = ("_breakers", "_lock", "_threshold", "_cooldown", "_clock")

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self._threshold = failure_threshold
        self._cooldown = cooldown
        self._clock = clock

    def get(self, server_id: str) -> CircuitBreaker:
        with self._lock:
            if (breaker := self._breakers.get(server_id)) is None:
                breaker = self._breakers[server_id] = CircuitBreaker(
                    server_id, failure_threshold=self._threshold, cooldown=self._cooldown, clock=self._clock,
                )
            return breaker

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.server_id: b.snapshot() for b in breakers}

    def reset(self, server_id: str | None = None) -> None:
        with self._lock:
            targets = list(self._breakers.values()) if server_id is None else [
                b for sid, b in self._breakers.items() if sid == server_id
            ]
        for b in targets:
            b.reset()

