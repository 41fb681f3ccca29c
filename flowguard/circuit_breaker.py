"""
Circuit Breaker pattern implementation to stop calls to a failing provider.
Prevents cascading failures by temporarily blocking calls to failing services.

One breaker exists per protected dependency. Breakers live in an explicit
CircuitBreakerRegistry owned by the composition root and passed to callers.
"""

import asyncio
import functools
import inspect
import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from flowguard.alerts import send_critical, send_info
from flowguard.config import get_breaker_settings, get_configured_dependencies
from flowguard.event_log import EventType, log_event

logger = logging.getLogger("circuit_breaker")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Blocked, failures exceeded threshold
    HALF_OPEN = "half_open"  # Single probe testing recovery


class CircuitBreakerError(Exception):
    """Raised when the circuit is open and the call is short-circuited."""
    def __init__(self, breaker_name: str, time_until_retry: Optional[float] = None):
        self.breaker_name = breaker_name
        self.time_until_retry = time_until_retry
        msg = f"Circuit breaker '{breaker_name}' is OPEN"
        if time_until_retry:
            msg += f" - retry in {time_until_retry:.1f}s"
        super().__init__(msg)


Operation = Callable[[], Union[Awaitable[Any], Any]]


class CircuitBreaker:
    """Three-state fault isolator for a single dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        alerts_enabled: bool = True
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.alerts_enabled = alerts_enabled
        self._clock = clock
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at: Optional[float] = None
        self.last_failure_time: Optional[datetime] = None
        # Identifies the one admitted half-open probe; None when no probe is in flight
        self._probe_token: Optional[object] = None
        self._alert_tasks: Set[asyncio.Future] = set()

        self.total_calls = 0
        self.total_failures = 0
        self.total_successes = 0
        self.total_rejections = 0
        self.last_state_change = datetime.now(timezone.utc)

    def _transition(self, new_state: CircuitState, reason: str) -> Dict[str, Any]:
        """Caller holds the lock. Returns the event payload for _record_transition."""
        old_state = self.state
        self.state = new_state
        self.last_state_change = datetime.now(timezone.utc)
        return {
            "breaker": self.name,
            "from": old_state.value,
            "to": new_state.value,
            "reason": reason,
            "failure_count": self.failure_count,
        }

    def _record_transition(self, transition: Optional[Dict[str, Any]]):
        if transition is None:
            return
        logger.info("%s: %s -> %s (%s)", self.name, transition["from"].upper(),
                    transition["to"].upper(), transition["reason"])
        log_event(EventType.CIRCUIT_STATE_CHANGED, transition)

    def _time_until_retry(self) -> Optional[float]:
        if self.state != CircuitState.OPEN or self.next_attempt_at is None:
            return None
        return max(0.0, self.next_attempt_at - self._clock())

    def _is_probe(self, token: Optional[object]) -> bool:
        """Caller holds the lock."""
        return token is not None and token is self._probe_token and self.state == CircuitState.HALF_OPEN

    def _before_call(self) -> Optional[object]:
        """
        Admit or reject a call. Raises CircuitBreakerError when rejecting.

        Returns a probe token when the admitted call is the half-open probe,
        None for calls admitted while CLOSED.
        """
        transition = None
        with self._lock:
            self.total_calls += 1

            if self.state == CircuitState.OPEN:
                if self._clock() < self.next_attempt_at:
                    self.total_rejections += 1
                    raise CircuitBreakerError(self.name, self._time_until_retry())
                transition = self._transition(CircuitState.HALF_OPEN, "reset timeout elapsed, probing")
                token = self._probe_token = object()
            elif self.state == CircuitState.HALF_OPEN:
                if self._probe_token is not None:
                    self.total_rejections += 1
                    raise CircuitBreakerError(self.name)
                token = self._probe_token = object()
            else:
                token = None

        self._record_transition(transition)
        return token

    def _release_probe(self, token: Optional[object]):
        """Free the probe slot without deciding the probe (cancelled probe)."""
        with self._lock:
            if token is not None and token is self._probe_token:
                self._probe_token = None

    def _on_success(self, probe_token: Optional[object] = None):
        transition = None
        with self._lock:
            self.success_count += 1
            self.total_successes += 1
            if self._is_probe(probe_token):
                self._probe_token = None
                self.failure_count = 0
                self.next_attempt_at = None
                transition = self._transition(CircuitState.CLOSED, "probe succeeded")
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

        self._record_transition(transition)
        if transition is not None and self.alerts_enabled:
            self._dispatch_alert(
                send_info,
                f"Circuit breaker recovered: {self.name}",
                f"Dependency '{self.name}' passed its recovery probe.",
                source="circuit_breaker",
            )

    def _on_failure(self, error: BaseException, probe_token: Optional[object] = None):
        transition = None
        opened_from = None
        with self._lock:
            self.total_failures += 1
            self.last_failure_time = datetime.now(timezone.utc)

            if self._is_probe(probe_token):
                self._probe_token = None
                self.failure_count += 1
                self.next_attempt_at = self._clock() + self.reset_timeout
                transition = self._transition(CircuitState.OPEN, "probe failed")
                opened_from = CircuitState.HALF_OPEN
            elif self.state == CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.failure_threshold:
                    self.next_attempt_at = self._clock() + self.reset_timeout
                    transition = self._transition(
                        CircuitState.OPEN,
                        f"failures: {self.failure_count}/{self.failure_threshold}"
                    )
                    opened_from = CircuitState.CLOSED
            # Late failures of calls admitted before the breaker opened only count in metrics
            failure_count = self.failure_count

        logger.warning("%s failure: %s: %s", self.name, type(error).__name__, error)
        self._record_transition(transition)

        if opened_from is not None and self.alerts_enabled:
            self._dispatch_alert(
                send_critical,
                f"Circuit breaker OPEN: {self.name}",
                f"Dependency '{self.name}' opened from {opened_from.value.upper()} "
                f"after {failure_count} failure(s). Blocked for {self.reset_timeout}s.",
                metadata={"service": self.name,
                          "failure_count": failure_count,
                          "threshold": self.failure_threshold},
                source="circuit_breaker",
            )

    def _dispatch_alert(self, send: Callable[..., Any], *args, **kwargs):
        """Deliver an alert on a worker thread; Slack delivery blocks."""
        task = asyncio.ensure_future(asyncio.to_thread(send, *args, **kwargs))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_finished)

    def _alert_finished(self, task: asyncio.Future):
        self._alert_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("%s alert delivery failed: %s", self.name, task.exception())

    async def wait_for_alerts(self):
        """Wait until alerts dispatched so far have been delivered."""
        if self._alert_tasks:
            await asyncio.gather(*list(self._alert_tasks), return_exceptions=True)

    async def execute(self, operation: Operation) -> Any:
        """
        Run operation with breaker protection.

        Raises:
            CircuitBreakerError: when the circuit is open or a probe is in flight
            Exception: the operation's own error, after recording it
        """
        try:
            probe_token = self._before_call()
        except CircuitBreakerError as e:
            log_event(EventType.CIRCUIT_REJECTED, {"breaker": self.name, "time_until_retry": e.time_until_retry})
            raise

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            self._release_probe(probe_token)
            raise
        except Exception as e:
            self._on_failure(e, probe_token)
            raise

        self._on_success(probe_token)
        return result

    def get_status(self) -> Dict[str, Any]:
        """Read-only snapshot of state and metrics."""
        with self._lock:
            time_until_retry = self._time_until_retry()
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                "time_until_retry": time_until_retry,
                "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
                "metrics": {
                    "total_calls": self.total_calls,
                    "total_failures": self.total_failures,
                    "total_successes": self.total_successes,
                    "total_rejections": self.total_rejections,
                    "last_state_change": self.last_state_change.isoformat(),
                },
            }

    def reset(self):
        """Manually close (reset) the breaker with zeroed counters."""
        with self._lock:
            self.failure_count = 0
            self.success_count = 0
            self.next_attempt_at = None
            self._probe_token = None
            transition = self._transition(CircuitState.CLOSED, "manual reset")
        self._record_transition(transition)

    def force_open(self):
        """Manually open the breaker for a full reset timeout."""
        with self._lock:
            self.next_attempt_at = self._clock() + self.reset_timeout
            self._probe_token = None
            transition = self._transition(CircuitState.OPEN, "manually opened")
        self._record_transition(transition)


class CircuitBreakerRegistry:
    """Registry holding one breaker per protected dependency."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        alerts_enabled: bool = True,
        register_configured: bool = True
    ):
        self.breakers: Dict[str, CircuitBreaker] = {}
        self._clock = clock
        self._alerts_enabled = alerts_enabled
        self._lock = threading.Lock()
        if register_configured:
            for name in get_configured_dependencies():
                self.get_or_create(name)

    def get_or_create(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None
    ) -> CircuitBreaker:
        """Return the breaker for name, registering it from configuration if needed."""
        with self._lock:
            breaker = self.breakers.get(name)
            if breaker is not None:
                return breaker

            settings = get_breaker_settings(name)
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=failure_threshold or settings.get("failure_threshold", 5),
                reset_timeout=reset_timeout if reset_timeout is not None else settings.get("reset_timeout_seconds", 60),
                clock=self._clock,
                alerts_enabled=self._alerts_enabled,
            )
            self.breakers[name] = breaker
            return breaker

    def get_breaker(self, name: str) -> Optional[CircuitBreaker]:
        return self.breakers.get(name)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {name: breaker.get_status() for name, breaker in list(self.breakers.items())}

    def reset(self, name: str) -> bool:
        breaker = self.breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def force_open(self, name: str) -> bool:
        breaker = self.breakers.get(name)
        if breaker is None:
            return False
        breaker.force_open()
        return True


def with_circuit_breaker(
    registry: CircuitBreakerRegistry,
    breaker_name: str,
    fallback: Optional[Callable] = None
):
    """
    Decorator to wrap an async function with circuit breaker protection.

    Args:
        registry: Registry owning the breaker
        breaker_name: Name of the circuit breaker to use
        fallback: Optional function called with the same arguments when the circuit is open
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            breaker = registry.get_or_create(breaker_name)
            try:
                return await breaker.execute(lambda: func(*args, **kwargs))
            except CircuitBreakerError:
                if fallback is None:
                    raise
                result = fallback(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                return result

        return wrapper

    return decorator
