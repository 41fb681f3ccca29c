"""
flowguard: step guardrails and execution resilience for workflow runs.
"""

from flowguard.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerRegistry,
    CircuitState,
)
from flowguard.guardrails import (
    Disposition,
    Finding,
    FindingKind,
    GuardrailEngine,
    GuardrailVerdict,
    Severity,
    decide,
)
from flowguard.idempotency import (
    IdempotencyConflictError,
    IdempotencyController,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    derive_key,
)
from flowguard.policy_store import (
    ComplianceRule,
    InMemoryPolicyStore,
    JsonPolicyStore,
    RiskPolicy,
)
from flowguard.protected_call import ExecutionProfile, ProviderExecutor, TimeoutScope, call_protected
from flowguard.retry import RetriesExhaustedError, retry, retry_request
from flowguard.timeouts import OperationTimeoutError, with_timeout

__version__ = "0.1.0"
