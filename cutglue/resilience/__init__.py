"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when dependencies fail.
"""

from cutglue.resilience.circuit_breakers import (
    CircuitOpenError,
    call_with_breaker,
    call_with_breaker_async,
    get_email_breaker,
    get_generation_breaker,
    get_stripe_breaker,
    reset_all_breakers,
    with_retry,
)

__all__ = [
    "CircuitOpenError",
    "call_with_breaker",
    "call_with_breaker_async",
    "get_email_breaker",
    "get_generation_breaker",
    "get_stripe_breaker",
    "reset_all_breakers",
    "with_retry",
]
