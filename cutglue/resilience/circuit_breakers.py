"""
Circuit breakers for external dependencies.

Prevents cascade failures when Stripe, MailerSend or the AI worker
experience outages.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed

Calls go through CircuitBreaker.call() on a worker thread, so the guarded
functions are synchronous (stripe SDK, httpx.Client).
"""

import asyncio
import logging
from collections.abc import Callable
from typing import TypeVar

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitOpenError(Exception):
    """Circuit breaker open; the dependency is not called."""

    def __init__(self, breaker_name: str, retry_after_seconds: float):
        self.breaker_name = breaker_name
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"{breaker_name} unavailable (circuit breaker open). "
            f"Retry after {retry_after_seconds} seconds."
        )


def _on_circuit_open(breaker: CircuitBreaker) -> None:
    logger.error(
        f"Circuit breaker OPENED: {breaker.name}",
        extra={
            "breaker_name": breaker.name,
            "fail_count": breaker.fail_counter,
            "fail_max": breaker.fail_max,
            "state": "OPEN",
        },
    )


def _on_circuit_close(breaker: CircuitBreaker) -> None:
    logger.info(
        f"Circuit breaker CLOSED: {breaker.name} (service recovered)",
        extra={"breaker_name": breaker.name, "state": "CLOSED"},
    )


def _on_circuit_half_open(breaker: CircuitBreaker) -> None:
    logger.warning(
        f"Circuit breaker HALF-OPEN: {breaker.name} (testing recovery)",
        extra={"breaker_name": breaker.name, "state": "HALF_OPEN"},
    )


class StateChangeLogger(CircuitBreakerListener):
    """Log breaker state transitions."""

    def state_change(self, cb, old_state, new_state):
        name = getattr(new_state, "name", str(new_state))
        callback = {
            "open": _on_circuit_open,
            "closed": _on_circuit_close,
            "half-open": _on_circuit_half_open,
        }.get(name)
        if callback is not None:
            callback(cb)


_state_listener = StateChangeLogger()


# Stripe: opens after 3 consecutive failures, stays open for 30 seconds
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    name="Stripe",
    listeners=[_state_listener],
)

# MailerSend: notifications are best effort, so give up quickly
email_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=60,
    name="MailerSend",
    listeners=[_state_listener],
)

# AI worker
generation_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=30,
    name="Generation",
    listeners=[_state_listener],
)


def get_stripe_breaker() -> CircuitBreaker:
    return stripe_breaker


def get_email_breaker() -> CircuitBreaker:
    return email_breaker


def get_generation_breaker() -> CircuitBreaker:
    return generation_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    for breaker in (stripe_breaker, email_breaker, generation_breaker):
        breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


def call_with_breaker(breaker: CircuitBreaker, func: Callable[..., T], *args, **kwargs) -> T:
    """
    Call a synchronous function through a circuit breaker.

    Raises:
        CircuitOpenError: If the circuit is open
        Exception: Whatever func raises (and the failure is counted)
    """
    try:
        return breaker.call(func, *args, **kwargs)
    except CircuitBreakerError as e:
        logger.warning(
            f"{breaker.name} circuit breaker OPEN - failing fast",
            extra={
                "function": getattr(func, "__name__", repr(func)),
                "state": breaker.current_state,
            },
        )
        raise CircuitOpenError(breaker.name, breaker.reset_timeout) from e


async def call_with_breaker_async(
    breaker: CircuitBreaker, func: Callable[..., T], *args, **kwargs
) -> T:
    """Run call_with_breaker() on a worker thread."""
    return await asyncio.to_thread(call_with_breaker, breaker, func, *args, **kwargs)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """
    Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        exceptions: Exception types to retry on

    Usage:
        @with_retry(max_attempts=3, exceptions=(httpx.TransportError,))
        def send(...):
            return client.post(...)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        reraise=True,
    )
