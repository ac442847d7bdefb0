"""
Circuit breaker for external collaborators.

Stops calling a courier, payment or inventory endpoint after repeated
failures so a degraded collaborator fails fast instead of stalling workflow
operations and the deadline monitor.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Probing recovery


class CircuitBreakerError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is OPEN")
        self.name = name
        self.retry_after = retry_after


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    expected_exception: type = Exception
    success_threshold: int = 2


class CircuitBreaker:
    """
    Async circuit breaker.

    States:
    - CLOSED: calls pass through, consecutive failures are counted
    - OPEN: calls are rejected until ``recovery_timeout`` elapses
    - HALF_OPEN: calls pass through, ``success_threshold`` successes close it
      and any failure re-opens it
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()

        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        await self._check_state()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self._on_success()
        elif issubclass(exc_type, self.config.expected_exception):
            await self._on_failure()
        return False  # Don't suppress exceptions

    async def _check_state(self) -> None:
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            remaining = self._remaining_open_time()
            if remaining > 0:
                raise CircuitBreakerError(self.name, remaining)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0

    def _remaining_open_time(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (time.monotonic() - self.opened_at))

    async def _on_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self.reset()
            else:
                self.failure_count = 0

    async def _on_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            if (self.state == CircuitState.HALF_OPEN
                    or self.failure_count >= self.config.failure_threshold):
                self.state = CircuitState.OPEN
                self.opened_at = time.monotonic()

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = None

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.config.failure_threshold,
            "recovery_timeout": self.config.recovery_timeout,
        }

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute an async callable with circuit breaker protection."""
        async with self:
            return await func(*args, **kwargs)


# Global circuit breakers registry
_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name, config)
    return _circuit_breakers[name]


def reset_circuit_breaker(name: str) -> bool:
    """Reset a circuit breaker by name."""
    if name in _circuit_breakers:
        _circuit_breakers[name].reset()
        return True
    return False


def get_circuit_breaker_stats() -> Dict[str, dict]:
    """Get statistics for all circuit breakers."""
    return {name: cb.get_stats() for name, cb in _circuit_breakers.items()}
