"""Retry policies for collaborator and infrastructure calls."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import redis.asyncio as redis
from prometheus_client import Counter
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from reverse_logistics.observability.tracing import get_tracer

tracer = get_tracer(__name__)

# Metrics
retry_attempts_total = Counter(
    "reverse_logistics_retry_attempts_total",
    "Total retry attempts",
    ["service", "operation", "attempt"]
)

retry_failures_total = Counter(
    "reverse_logistics_retry_failures_total",
    "Total retry failures after all attempts",
    ["service", "operation", "error_type"]
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True


class ExponentialBackoffPolicy:
    """Exponential backoff retry policy built on tenacity.

    Args:
        config: Attempt and delay limits
        service_name: Label used in metrics and spans
        should_retry: Predicate deciding whether an exception is transient
    """

    def __init__(
        self,
        config: RetryConfig,
        service_name: str = "unknown",
        should_retry: Callable[[BaseException], bool] = lambda exc: True,
    ):
        self.config = config
        self.service_name = service_name
        self.should_retry = should_retry

    def _wait_strategy(self):
        if self.config.jitter:
            return wait_random_exponential(
                multiplier=self.config.base_delay,
                max=self.config.max_delay
            )
        return wait_exponential(
            multiplier=self.config.base_delay,
            max=self.config.max_delay,
            exp_base=self.config.exponential_base
        )

    def retrying(self, operation_name: str = "unknown") -> AsyncRetrying:
        """Build a tenacity ``AsyncRetrying`` controller for one operation."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception(self.should_retry),
            before_sleep=self._before_sleep_callback(operation_name),
            reraise=True,
        )

    def _before_sleep_callback(self, operation_name: str):
        def callback(retry_state):
            attempt = retry_state.attempt_number
            retry_attempts_total.labels(
                service=self.service_name,
                operation=operation_name,
                attempt=str(attempt)
            ).inc()

            with tracer.start_as_current_span("retry_attempt") as span:
                span.set_attribute("service", self.service_name)
                span.set_attribute("operation", operation_name)
                span.set_attribute("attempt", attempt)
                span.set_attribute("exception", str(retry_state.outcome.exception()))

        return callback

    async def run(
        self,
        operation: Callable[..., Awaitable[Any]],
        operation_name: str = "unknown",
        *args,
        **kwargs
    ) -> Any:
        """Run an async operation under this policy.

        Raises:
            Exception: The last exception once attempts are exhausted
        """
        try:
            async for attempt in self.retrying(operation_name):
                with attempt:
                    return await operation(*args, **kwargs)
        except Exception as exc:
            retry_failures_total.labels(
                service=self.service_name,
                operation=operation_name,
                error_type=type(exc).__name__
            ).inc()
            raise


# ==== TRANSIENT ERROR PREDICATES ==== #


def is_transient_http_error(exc: BaseException) -> bool:
    """Network failures and 5xx/429 responses are worth retrying."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError))


def is_transient_redis_error(exc: BaseException) -> bool:
    return isinstance(exc, (redis.ConnectionError, redis.TimeoutError, ConnectionError, TimeoutError))



# ==== PREDEFINED POLICIES ==== #


def create_http_retry_policy(service_name: str = "http_client",
                             config: Optional[RetryConfig] = None) -> ExponentialBackoffPolicy:
    """Create retry policy for collaborator HTTP calls."""
    return ExponentialBackoffPolicy(
        config=config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=10.0),
        service_name=service_name,
        should_retry=is_transient_http_error
    )


def create_redis_retry_policy() -> ExponentialBackoffPolicy:
    """Create retry policy for Redis operations."""
    return ExponentialBackoffPolicy(
        config=RetryConfig(max_attempts=3, base_delay=0.1, max_delay=2.0),
        service_name="redis",
        should_retry=is_transient_redis_error
    )
