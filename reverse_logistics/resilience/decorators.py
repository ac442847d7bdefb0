"""Decorators for applying resilience patterns to async collaborator calls."""

import functools
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .circuit_breaker import CircuitBreakerConfig, get_circuit_breaker
from .retry_policies import (
    ExponentialBackoffPolicy,
    create_http_retry_policy,
    create_redis_retry_policy,
)

T = TypeVar('T')


def with_circuit_breaker(
    service_name: str,
    config: Optional[CircuitBreakerConfig] = None
):
    """Decorator to add circuit breaker protection to an async function.

    Args:
        service_name: Name of the circuit breaker in the registry
        config: Optional circuit breaker configuration

    Returns:
        Decorated function with circuit breaker protection
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        circuit_breaker = get_circuit_breaker(service_name, config)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await circuit_breaker.call(func, *args, **kwargs)
        return wrapper

    return decorator


def with_retry(
    policy: ExponentialBackoffPolicy,
    operation_name: Optional[str] = None
):
    """Decorator to add retry logic to an async function.

    Args:
        policy: Retry policy to apply
        operation_name: Optional operation name for metrics

    Returns:
        Decorated function with retry logic
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await policy.run(func, op_name, *args, **kwargs)
        return wrapper

    return decorator


def with_resilience(
    service_name: str,
    retry_policy: ExponentialBackoffPolicy,
    circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
    operation_name: Optional[str] = None
):
    """Decorator to add both retry and circuit breaker protection.

    Retries run inside the breaker, so one exhausted retry sequence counts
    as a single failure.

    Args:
        service_name: Name of the service
        retry_policy: Retry policy to apply
        circuit_breaker_config: Optional circuit breaker configuration
        operation_name: Optional operation name for metrics

    Returns:
        Decorated function with full resilience protection
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        retry_decorated = with_retry(retry_policy, operation_name)(func)
        return with_circuit_breaker(service_name, circuit_breaker_config)(retry_decorated)

    return decorator


# Convenience decorators for common services

def collaborator_resilient(service_name: str, operation_name: Optional[str] = None):
    """Decorator for HTTP calls to an external collaborator.

    Each collaborator (courier, payment, inventory, ...) gets its own breaker
    so one failing service does not block the others.
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        policy = create_http_retry_policy(service_name)
        config = CircuitBreakerConfig(
            failure_threshold=5,
            recovery_timeout=60.0,
            expected_exception=httpx.HTTPError,
            success_threshold=2
        )
        return with_resilience(service_name, policy, config, operation_name)(func)

    return decorator


def redis_resilient(operation_name: Optional[str] = None):
    """Decorator for Redis operations with appropriate resilience."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        policy = create_redis_retry_policy()
        config = CircuitBreakerConfig(
            failure_threshold=3,
            recovery_timeout=5.0,
            success_threshold=2
        )
        return with_resilience("redis", policy, config, operation_name)(func)

    return decorator
