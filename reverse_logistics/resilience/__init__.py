"""
Resilience patterns for the workflow engine.

- Circuit Breaker: fails fast when a collaborator is down
- Retry: exponential backoff for transient collaborator errors
- Rate Limiter: sliding window guard for RTO triggers
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
    CircuitBreakerConfig,
    get_circuit_breaker,
    reset_circuit_breaker,
    get_circuit_breaker_stats
)
from .rate_limiter import RateLimitDecision, RateLimiter, RedisRateLimiter

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitState",
    "CircuitBreakerConfig",
    "get_circuit_breaker",
    "reset_circuit_breaker",
    "get_circuit_breaker_stats",
    "RateLimitDecision",
    "RateLimiter",
    "RedisRateLimiter",
]
