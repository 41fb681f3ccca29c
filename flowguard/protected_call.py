"""
Protected provider calls.

Composes the timeout wrapper, retry controller and circuit breaker around a
single provider operation:

    TOTAL:        with_timeout( retry( breaker.execute(op) ) )
    PER_ATTEMPT:  retry( with_timeout( breaker.execute(op) ) )

TOTAL bounds the whole retry budget by one timeout and stops scheduling
attempts once it fires. PER_ATTEMPT bounds every try separately, so the
caller may wait up to worst_case_latency(profile).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from flowguard.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from flowguard.config import get_execution_profile_settings
from flowguard.policy_store import DailyActionTracker
from flowguard.retry import RetryPolicy, retry
from flowguard.timeouts import detach_on_cancel, with_timeout

logger = logging.getLogger("protected_call")

Operation = Callable[[], Union[Awaitable[Any], Any]]


class TimeoutScope(Enum):
    TOTAL = "total"
    PER_ATTEMPT = "per_attempt"


@dataclass
class ExecutionProfile:
    """Timeout and retry budget for calls to one provider."""
    timeout: float = 30.0
    max_attempts: int = 3
    base_delay: float = 1.0
    jitter_ratio: float = 0.3
    timeout_scope: TimeoutScope = TimeoutScope.TOTAL
    cancel_on_timeout: bool = False

    @classmethod
    def from_config(cls, name: str = "default") -> "ExecutionProfile":
        settings = get_execution_profile_settings(name)
        policy = RetryPolicy.from_config(settings.get("retry_policy", "default"))
        return cls(
            timeout=float(settings.get("timeout_seconds", 30)),
            max_attempts=policy.max_attempts,
            base_delay=policy.base_delay,
            jitter_ratio=policy.jitter_ratio,
            timeout_scope=TimeoutScope(settings.get("timeout_scope", TimeoutScope.TOTAL.value)),
            cancel_on_timeout=bool(settings.get("cancel_on_timeout", False)),
        )


def worst_case_latency(profile: ExecutionProfile) -> float:
    """Upper bound on how long call_protected can take before it settles."""
    if profile.timeout_scope is TimeoutScope.TOTAL:
        return profile.timeout
    backoff = sum(
        (1 + profile.jitter_ratio) * profile.base_delay * (2 ** attempt)
        for attempt in range(profile.max_attempts - 1)
    )
    return profile.max_attempts * profile.timeout + backoff


async def call_protected(
    operation: Operation,
    breaker: CircuitBreaker,
    profile: Optional[ExecutionProfile] = None,
    operation_name: Optional[str] = None
) -> Any:
    """
    Run operation through timeout, retry and circuit breaker protection.

    Raises:
        OperationTimeoutError, RetriesExhaustedError, CircuitBreakerError or the
        operation's own non-retryable error
    """
    profile = profile or ExecutionProfile()
    name = operation_name or breaker.name
    message = f"{name} timed out"

    def guarded():
        return breaker.execute(operation)

    if profile.timeout_scope is TimeoutScope.PER_ATTEMPT:
        return await retry(
            lambda: with_timeout(guarded, profile.timeout, message, profile.cancel_on_timeout),
            max_attempts=profile.max_attempts,
            base_delay=profile.base_delay,
            jitter_ratio=profile.jitter_ratio,
            operation_name=name,
        )

    # The retry loop is always cancelled at the deadline so no new attempt
    # starts after it. Only the in-flight attempt may outlive the timeout.
    attempt = guarded if profile.cancel_on_timeout else (lambda: detach_on_cancel(guarded))
    return await with_timeout(
        lambda: retry(
            attempt,
            max_attempts=profile.max_attempts,
            base_delay=profile.base_delay,
            jitter_ratio=profile.jitter_ratio,
            operation_name=name,
        ),
        profile.timeout,
        message,
        cancel_on_timeout=True,
    )


class ProviderExecutor:
    """
    Executes provider operations with the breaker and profile configured
    for that provider. Successful actions are recorded for the daily quota.
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry,
        action_tracker: Optional[DailyActionTracker] = None
    ):
        self.registry = registry
        self.action_tracker = action_tracker

    async def execute(
        self,
        provider: str,
        operation: Operation,
        *,
        tenant_id: Optional[str] = None,
        action: Optional[str] = None,
        run_id: Optional[str] = None,
        profile: Optional[ExecutionProfile] = None
    ) -> Any:
        breaker = self.registry.get_or_create(provider)
        profile = profile or ExecutionProfile.from_config(provider)
        operation_name = f"{provider}.{action}" if action else provider

        result = await call_protected(operation, breaker, profile, operation_name)

        if self.action_tracker is not None and tenant_id:
            self.action_tracker.record(tenant_id, provider, action or "", run_id=run_id)
        logger.debug("%s completed for tenant %s", operation_name, tenant_id)
        return result
