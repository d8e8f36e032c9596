"""Deadline-aware retry loop.

Only transient failures are retried (transport timeouts, connection errors,
5xx-equivalent remote errors). Every attempt runs under
``asyncio.timeout(min(attempt_timeout, remaining))`` and backoff never sleeps
past the request deadline, so the deadline is a hard ceiling over the whole
sequence.

Outcomes once retrying stops:
- non-transient failure: re-raised as-is, immediately
- attempt budget spent: RemoteApplicationError carrying the last cause
- deadline spent: TransportTimeout
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import Annotated, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from toolbridge.foundation.errors import (
    GatewayError,
    RemoteApplicationError,
    TransportTimeout,
    classify_exception,
    is_transient,
)
from toolbridge.observability import get_logger

from .backoff import Backoff, ExponentialBackoff

T = TypeVar("T")

log = get_logger("toolbridge.retry")


class RetryPolicy(BaseModel):
    """How many attempts, and how long to wait between them.

    Attributes:
        max_attempts: Total attempts including the first (1 = no retries)
        backoff: Delay strategy between attempts
        on_retry: Optional callback ``(attempt, error, delay)`` per scheduled retry

    Example:
        >>> policy = RetryPolicy(max_attempts=5, backoff=ExponentialBackoff(base=0.5))
    """

    model_config = ConfigDict(
        frozen=True,
        arbitrary_types_allowed=True,  # For Backoff protocol
        extra="forbid",
        revalidate_instances="never",
    )

    max_attempts: Annotated[int, Field(ge=1, le=10)] = 3
    backoff: Backoff = Field(default_factory=ExponentialBackoff, repr=False)
    on_retry: Callable[[int, GatewayError, float], None] | None = Field(default=None, exclude=True, repr=False)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Whether attempt number ``attempt`` (0-indexed, just failed) may be followed by another."""
        return attempt + 1 < self.max_attempts and is_transient(error)

    def get_delay(self, attempt: int) -> float:
        return self.backoff.delay(attempt)


NO_RETRY = RetryPolicy(max_attempts=1)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    deadline: float,
    attempt_timeout: float | None = None,
    label: str = "",
) -> T:
    """Run ``operation`` until it succeeds, fails permanently, or runs out of budget.

    Args:
        operation: Zero-arg coroutine factory, called once per attempt
        policy: Attempt budget and backoff
        deadline: Absolute ``time.monotonic()`` ceiling for the whole sequence
        attempt_timeout: Optional per-attempt cap (bounded by the deadline)
        label: Context for log events

    Raises:
        GatewayError: Non-transient failure, TransportTimeout on deadline,
            or terminal RemoteApplicationError once attempts are spent.
    """
    last: GatewayError | None = None
    for attempt in range(policy.max_attempts):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _deadline_exceeded(last, attempt, label)
        budget = remaining if attempt_timeout is None else min(attempt_timeout, remaining)
        try:
            async with asyncio.timeout(budget):
                return await operation()
        except Exception as e:  # noqa: BLE001 - classified below, never swallowed
            err = classify_exception(e)
            if err is not e:
                err.__cause__ = e
        last = err

        if not is_transient(err):
            raise err
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _deadline_exceeded(err, attempt + 1, label)
        if not policy.should_retry(err, attempt):
            raise RemoteApplicationError.terminal(err, attempt + 1) from err

        delay = policy.get_delay(attempt)
        if delay >= remaining:
            # The next attempt could not start before the deadline
            raise _deadline_exceeded(err, attempt + 1, label)

        log.warning("retry.scheduled", target=label, attempt=attempt + 1,
                    max_attempts=policy.max_attempts, delay=round(delay, 3), code=err.code.value)
        if policy.on_retry:
            policy.on_retry(attempt, err, delay)
        await asyncio.sleep(delay)  # Cancellation point

    raise RemoteApplicationError.terminal(last or TransportTimeout("No attempts made"), policy.max_attempts)


def _deadline_exceeded(last: GatewayError | None, attempts: int, label: str) -> TransportTimeout:
    if isinstance(last, TransportTimeout):
        return last
    details: dict[str, object] = {"attempts": attempts}
    if last is not None:
        details["cause"] = last.to_envelope().to_wire()
    where = f" for {label}" if label else ""
    return TransportTimeout(f"Deadline exceeded{where} after {attempts} attempt(s)", details=details)
