"""Resilience primitives: retry with backoff, circuit breaking, result caching."""

from .backoff import Backoff, ConstantBackoff, ExponentialBackoff
from .breaker import CircuitBreaker, CircuitBreakers, CircuitState, State, counts_as_failure
from .cache import MISS, CacheEntry, ResultCache, make_key
from .layer import ResilienceLayer
from .retry import NO_RETRY, RetryPolicy, execute_with_retry

__all__ = [
    # Retry
    "Backoff", "ExponentialBackoff", "ConstantBackoff", "RetryPolicy", "NO_RETRY", "execute_with_retry",
    # Breaker
    "State", "CircuitState", "CircuitBreaker", "CircuitBreakers", "counts_as_failure",
    # Cache
    "ResultCache", "CacheEntry", "MISS", "make_key",
    # Composition
    "ResilienceLayer",
]
