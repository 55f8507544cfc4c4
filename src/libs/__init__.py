"""Shared library helpers."""

from src.libs.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerStats,
    CircuitOpenError,
    CircuitState,
)
from src.libs.dates import DateParser
from src.libs.retry import RetryExhaustedError, with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
    "DateParser",
    "RetryExhaustedError",
    "with_retry",
]
