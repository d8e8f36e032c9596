"""Backoff strategies for the retry loop.

Attempt numbers are 0-indexed (first retry = attempt 0).
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@runtime_checkable
class Backoff(Protocol):
    """Protocol for backoff delay calculation."""

    def delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-indexed)."""
        ...


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """Exponential backoff with proportional jitter.

    Delay = min(base * multiplier^attempt * (1 ± jitter), max_delay)

    Attributes:
        base: Delay before the first retry in seconds (default: 1.0)
        max_delay: Cap applied after jitter (default: 30.0)
        multiplier: Growth factor per attempt (default: 2.0)
        jitter: Fractional spread, 0.2 means ±20% (default: 0.2)
    """

    base: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.2

    def delay(self, attempt: int) -> float:
        d = self.base * (self.multiplier ** attempt)
        if self.jitter:
            d *= 1.0 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, min(d, self.max_delay))


@dataclass(frozen=True, slots=True)
class ConstantBackoff:
    """Fixed delay between retries."""

    delay_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        return self.delay_seconds
