"""
Retry controller for provider calls.
Implements exponential backoff with bounded jitter and fatal-error classification.
"""

import asyncio
import functools
import inspect
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from flowguard.circuit_breaker import CircuitBreakerError
from flowguard.config import get_retry_policy_settings
from flowguard.event_log import EventType, log_event

logger = logging.getLogger("retry")

T = TypeVar("T")

FATAL_MESSAGE_MARKERS = ("authentication", "unauthorized", "forbidden")


class NonRetryableError(Exception):
    """Raise from an operation to abort retrying immediately."""


class RetriesExhaustedError(Exception):
    """All attempts failed; carries the attempt count and the last error."""
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


class HttpStatusError(Exception):
    """Non-success HTTP response from a provider."""
    def __init__(self, response: httpx.Response, retryable: bool):
        self.response = response
        self.status_code = response.status_code
        self.retryable = retryable
        super().__init__(f"HTTP {response.status_code}: {response.reason_phrase}")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    jitter_ratio: float = 0.3

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay after 0-indexed attempt: base * 2**attempt plus jitter drawn from
        [0, jitter_ratio * base * 2**attempt).
        """
        delay = self.base_delay * (2 ** attempt)
        return delay + random.random() * self.jitter_ratio * delay

    @classmethod
    def from_config(cls, name: str = "default") -> "RetryPolicy":
        settings = get_retry_policy_settings(name)
        return cls(
            max_attempts=int(settings.get("max_attempts", 3)),
            base_delay=float(settings.get("base_delay", 1.0)),
            jitter_ratio=float(settings.get("jitter_ratio", 0.3)),
        )


def is_retryable(error: BaseException) -> bool:
    """Classify a failure. Authentication/authorization and explicit fatal errors are not retried."""
    if isinstance(error, (NonRetryableError, PermissionError, CircuitBreakerError)):
        return False
    if isinstance(error, HttpStatusError):
        return error.retryable
    if isinstance(error, httpx.UnsupportedProtocol):
        return False
    message = str(error).lower()
    return not any(marker in message for marker in FATAL_MESSAGE_MARKERS)


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    operation_name: str = "operation",
    classify: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    jitter_ratio: float = 0.3
) -> T:
    """
    Attempt operation up to max_attempts times, sequentially.

    Raises:
        The original error for non-retryable failures
        RetriesExhaustedError when every attempt failed
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, jitter_ratio=jitter_ratio)
    last_error: Optional[Exception] = None

    for attempt in range(max_attempts):
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            last_error = e

            if not classify(e):
                logger.warning("%s failed with non-retryable error: %s", operation_name, e)
                raise

            if attempt < max_attempts - 1:
                delay = policy.calculate_delay(attempt)
                logger.info("%s attempt %d/%d failed (%s); retrying in %.2fs",
                            operation_name, attempt + 1, max_attempts, e, delay)
                log_event(
                    EventType.RETRY_SCHEDULED,
                    {
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "max_attempts": max_attempts,
                        "delay_seconds": delay,
                        "error": str(e),
                    }
                )
                await sleep(delay)

    logger.error("%s exhausted %d attempts: %s", operation_name, max_attempts, last_error)
    log_event(
        EventType.RETRY_EXHAUSTED,
        {"operation": operation_name, "attempts": max_attempts, "error": str(last_error)}
    )
    raise RetriesExhaustedError(max_attempts, last_error) from last_error


def with_retry(policy_name: str = "default", operation_name: Optional[str] = None):
    """
    Decorator adding retry behavior to an async function.

    Usage:
        @with_retry("provider_call")
        async def fetch_order(order_id): ...
    """
    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> T:
            policy = RetryPolicy.from_config(policy_name)
            return await retry(
                lambda: fn(*args, **kwargs),
                max_attempts=policy.max_attempts,
                base_delay=policy.base_delay,
                jitter_ratio=policy.jitter_ratio,
                operation_name=operation_name or fn.__name__,
            )
        return wrapper
    return decorator


async def retry_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **request_kwargs
) -> httpx.Response:
    """
    Send an HTTP request with retries.

    Client errors (4xx) fail immediately except 429; 5xx and 429 are retried.
    Transport errors are retried unless non-recoverable; cancellation propagates.
    """
    async def attempt() -> httpx.Response:
        response = await client.request(method, url, **request_kwargs)
        if response.status_code < 400:
            return response
        retryable = response.status_code == 429 or response.status_code >= 500
        raise HttpStatusError(response, retryable=retryable)

    return await retry(
        attempt,
        max_attempts=max_attempts,
        base_delay=base_delay,
        operation_name=f"{method.upper()} {url}",
        sleep=sleep,
    )
