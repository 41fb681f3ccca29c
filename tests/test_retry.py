"""
Retry Controller Tests
======================
Backoff bounds, fatal-error classification and the HTTP specialization.
"""

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from flowguard.circuit_breaker import CircuitBreakerError
from flowguard.event_log import EventType, read_events
from flowguard.retry import (
    HttpStatusError,
    NonRetryableError,
    RetriesExhaustedError,
    RetryPolicy,
    is_retryable,
    retry,
    retry_request,
    with_retry,
)


class FlakyOperation:
    """Fails `failures` times, then returns `result`."""

    def __init__(self, failures, result="done", error=ConnectionError("connection reset")):
        self.failures = failures
        self.result = result
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryPolicy:

    @pytest.mark.parametrize("attempt", [0, 1, 2, 3])
    def test_delay_bounds(self, attempt):
        policy = RetryPolicy(base_delay=0.5)
        base = 0.5 * (2 ** attempt)
        for _ in range(200):
            delay = policy.calculate_delay(attempt)
            assert base <= delay < 1.3 * base

    def test_from_config(self):
        policy = RetryPolicy.from_config("provider_call")
        assert policy.max_attempts == 4
        assert policy.base_delay == 0.5

    def test_unknown_policy_falls_back_to_default(self):
        assert RetryPolicy.from_config("nope").max_attempts == 3


class TestClassification:

    @pytest.mark.parametrize("error", [
        NonRetryableError("stop"),
        PermissionError("denied"),
        CircuitBreakerError("stripe", 10),
        Exception("Authentication failed"),
        Exception("401 Unauthorized"),
        Exception("403 Forbidden"),
    ])
    def test_fatal_errors(self, error):
        assert is_retryable(error) is False

    @pytest.mark.parametrize("error", [
        ConnectionError("reset"),
        TimeoutError("slow"),
        Exception("503 Service Unavailable"),
    ])
    def test_transient_errors(self, error):
        assert is_retryable(error) is True


class TestRetry:

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, recording_sleep):
        op = FlakyOperation(failures=2)
        result = await retry(op, max_attempts=3, base_delay=1.0, sleep=recording_sleep)
        assert result == "done"
        assert op.calls == 3
        assert len(recording_sleep.delays) == 2
        for i, delay in enumerate(recording_sleep.delays):
            assert 1.0 * 2 ** i <= delay < 1.3 * 2 ** i

    @pytest.mark.asyncio
    async def test_exhausted_raises_aggregate(self, recording_sleep):
        op = FlakyOperation(failures=10)
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await retry(op, max_attempts=3, base_delay=0.1, sleep=recording_sleep)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert "Failed after 3 attempts" in str(exc_info.value)
        assert op.calls == 3
        # no sleep after the final attempt
        assert len(recording_sleep.delays) == 2
        assert len(read_events(EventType.RETRY_SCHEDULED)) == 2
        assert len(read_events(EventType.RETRY_EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_fatal_error_aborts_immediately(self, recording_sleep):
        op = FlakyOperation(failures=5, error=Exception("Unauthorized: bad token"))
        with pytest.raises(Exception, match="Unauthorized"):
            await retry(op, max_attempts=5, sleep=recording_sleep)
        assert op.calls == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_classifier(self, recording_sleep):
        op = FlakyOperation(failures=5, error=ValueError("bad input"))
        with pytest.raises(ValueError):
            await retry(op, max_attempts=5, classify=lambda e: not isinstance(e, ValueError),
                        sleep=recording_sleep)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_sync_operation(self, recording_sleep):
        assert await retry(lambda: 7, sleep=recording_sleep) == 7

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, recording_sleep):
        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await retry(cancelled, max_attempts=3, sleep=recording_sleep)
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            await retry(lambda: 1, max_attempts=0)

    @pytest.mark.asyncio
    async def test_with_retry_decorator(self, monkeypatch):
        fast = RetryPolicy(max_attempts=4, base_delay=0.001)
        monkeypatch.setattr(RetryPolicy, "from_config", classmethod(lambda cls, name="default": fast))
        op = FlakyOperation(failures=3)

        @with_retry("provider_call")
        async def fetch():
            return await op()

        assert await fetch() == "done"
        assert op.calls == 4


def mock_client(statuses):
    """AsyncClient whose transport replies with the given status codes in order."""
    calls = []

    def handler(request):
        calls.append(request)
        status = statuses[min(len(calls) - 1, len(statuses) - 1)]
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status, json={"attempt": len(calls)})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


class TestRetryRequest:

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, recording_sleep):
        client, calls = mock_client([503, 502, 200])
        async with client:
            response = await retry_request(client, "GET", "https://api.example.com/orders",
                                           sleep=recording_sleep)
        assert response.status_code == 200
        assert len(calls) == 3
        assert len(recording_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, recording_sleep):
        client, calls = mock_client([429, 201])
        async with client:
            response = await retry_request(client, "POST", "https://api.example.com/refunds",
                                           json={"amount": 10}, sleep=recording_sleep)
        assert response.status_code == 201
        assert len(calls) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    async def test_client_error_not_retried(self, recording_sleep, status):
        client, calls = mock_client([status, 200])
        async with client:
            with pytest.raises(HttpStatusError) as exc_info:
                await retry_request(client, "GET", "https://api.example.com/x", sleep=recording_sleep)
        assert exc_info.value.status_code == status
        assert len(calls) == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_network_error_retried(self, recording_sleep):
        client, calls = mock_client([httpx.ConnectError("refused"), 200])
        async with client:
            response = await retry_request(client, "GET", "https://api.example.com/x", sleep=recording_sleep)
        assert response.status_code == 200
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_persistent_server_error_exhausts(self, recording_sleep):
        client, calls = mock_client([500])
        async with client:
            with pytest.raises(RetriesExhaustedError) as exc_info:
                await retry_request(client, "GET", "https://api.example.com/x",
                                    max_attempts=2, sleep=recording_sleep)
        assert isinstance(exc_info.value.last_error, HttpStatusError)
        assert len(calls) == 2
