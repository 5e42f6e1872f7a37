"""Retry and polling helpers for transient failures and asynchronous confirmation.

This module provides a decorator for retrying operations that may fail due to
transient errors (network timeouts, Azure throttling, etc), and a bounded
polling helper for waiting on asynchronous cloud operations (session host
registration, resource deletion).

Design Philosophy:
- Ruthless simplicity: one decorator for retries, one function for polling
- Configurable: Max attempts, delays, jitter can be tuned
- Observable: Clear logging of retry attempts
- Bounded: polling never runs longer than its attempt budget

Security:
- No credential leakage in logs
- Safe default limits

Usage:
    @retry_with_exponential_backoff(max_attempts=3)
    def azure_operation():
        client.some_operation()

    found = poll_until(lambda: find_host(), max_attempts=12, interval=10.0)
"""

import functools
import logging
import random
import time
from typing import Any, Callable, TypeVar

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

from avdops.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")

# Definitive answers from the service; retrying cannot change them
NON_RETRYABLE_ERRORS = (ResourceNotFoundError, ResourceExistsError, ClientAuthenticationError)


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    HTTP errors are only retried when their status code is transient
    (see should_retry_http_error); a 404 or 409 is raised immediately.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        jitter: Add random jitter to delays (default: True)
        retryable_exceptions: Tuple of exception types to retry
            (default: common Azure/network errors)

    Returns:
        Decorated function that will retry on transient failures
    """
    if retryable_exceptions is None:
        retryable_exceptions = _get_default_retryable_exceptions()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 1:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt}/{max_attempts}"
                        )
                    return result

                except retryable_exceptions as e:
                    if not _is_transient(e):
                        raise

                    if attempt >= max_attempts:
                        logger.debug(
                            f"{func.__name__} failed after {max_attempts} attempts: "
                            f"{LogSanitizer.sanitize(str(e))}"
                        )
                        raise

                    actual_delay = delay
                    if jitter:
                        # ±25% of delay
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)
                    actual_delay = min(actual_delay, max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {_safe_error_message(e)}"
                    )
                    time.sleep(actual_delay)
                    delay *= 2

            raise RuntimeError(f"{func.__name__} failed with unknown error")

        return wrapper  # type: ignore

    return decorator


def poll_until(
    probe: Callable[[], T | None],
    *,
    max_attempts: int,
    interval: float,
    initial_delay: float = 0.0,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> T | None:
    """Poll until probe returns a truthy value or the attempt budget runs out.

    The probe runs at most max_attempts times. Total sleeping never exceeds
    initial_delay + (max_attempts - 1) * interval.

    Args:
        probe: Zero-argument callable; a truthy return ends polling
        max_attempts: Maximum number of probe calls (must be >= 1)
        interval: Seconds to wait between probes
        initial_delay: Settle delay before the first probe
        description: Text used in progress logging
        sleep: Sleep function (injectable for tests)

    Returns:
        The first truthy probe result, or None if every attempt missed
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    if initial_delay > 0:
        sleep(initial_delay)

    for attempt in range(1, max_attempts + 1):
        result = probe()
        if result:
            return result
        logger.info(f"  Waiting for {description}... (attempt {attempt}/{max_attempts})")
        if attempt < max_attempts:
            sleep(interval)

    return None


def _get_default_retryable_exceptions() -> tuple[type[Exception], ...]:
    """Get tuple of default retryable exception types."""
    return (
        TimeoutError,
        ConnectionError,
        HttpResponseError,
        ServiceRequestError,
        ServiceResponseError,
    )


def _is_transient(exception: Exception) -> bool:
    """Return False for HTTP errors whose status code is not worth retrying."""
    if isinstance(exception, NON_RETRYABLE_ERRORS):
        return False
    if isinstance(exception, HttpResponseError):
        status_code = getattr(exception, "status_code", None)
        if status_code is not None:
            return should_retry_http_error(status_code)
    return True


def _safe_error_message(exception: Exception) -> str:
    """Create safe, truncated error message without leaking credentials."""
    error_str = LogSanitizer.sanitize(str(exception))
    if len(error_str) > 200:
        error_str = error_str[:200] + "..."
    return error_str


def should_retry_http_error(status_code: int) -> bool:
    """Determine if HTTP status code should trigger retry.

    Retryable status codes:
        - 408: Request Timeout
        - 429: Too Many Requests (throttling)
        - 500: Internal Server Error
        - 502: Bad Gateway
        - 503: Service Unavailable
        - 504: Gateway Timeout
    """
    retryable_codes = {408, 429, 500, 502, 503, 504}
    return status_code in retryable_codes


__all__ = [
    "poll_until",
    "retry_with_exponential_backoff",
    "should_retry_http_error",
]
