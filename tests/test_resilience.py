"""
Tests for resilience patterns (circuit breaker, retry policy, retrying client).
"""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from earningstable.core.exceptions import (
    CircuitOpenError,
    PermanentUpstreamError,
    TransientUpstreamError,
)
from earningstable.services.data_providers.resilience import (
    CircuitBreaker,
    CircuitState,
    RetryableClient,
    RetryPolicy,
    get_breaker,
    parse_retry_after,
)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def scripted_transport(responses):
    """MockTransport answering from a list; callables are invoked with the request."""
    requests: list[httpx.Request] = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item):
            return item(request)
        return item

    return httpx.MockTransport(handler), requests


def make_client(transport, breaker=None, policy=None, sleep=None) -> RetryableClient:
    return RetryableClient(
        "feed",
        "https://feed.test",
        default_params={"token": "secret"},
        policy=policy or RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0, jitter=0),
        breaker=breaker or CircuitBreaker(name="feed", failure_threshold=3),
        transport=transport,
        sleep=sleep or RecordingSleep(),
    )


# =============================================================================
# Circuit Breaker Tests
# =============================================================================


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_initial_state_is_closed(self):
        """Circuit starts in closed state."""
        breaker = CircuitBreaker(name="test")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_closed
        assert not breaker.is_open

    async def test_guard_passes_when_closed(self):
        """Guard allows calls when circuit is closed."""
        breaker = CircuitBreaker(name="test")
        await breaker.guard()  # Should not raise

    def test_opens_after_threshold_failures(self):
        """Circuit opens after reaching failure threshold."""
        breaker = CircuitBreaker(failure_threshold=3, name="test")

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_failures_outside_window_do_not_count(self):
        """Only failures inside the rolling window open the circuit."""
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=3, failure_window=60, name="test", clock=clock)

        breaker.record_failure()
        breaker.record_failure()
        clock.advance(61)
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED

    async def test_guard_raises_when_open(self):
        """Guard raises CircuitOpenError when circuit is open."""
        breaker = CircuitBreaker(failure_threshold=2, name="test")
        breaker.record_failure()
        breaker.record_failure()

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.guard()
        assert exc_info.value.upstream == "test"

    def test_success_resets_failure_count(self):
        """Success clears the failure window while closed."""
        breaker = CircuitBreaker(failure_threshold=3, name="test")

        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_stats()["failure_count"] == 1

    def test_half_open_after_recovery_timeout(self):
        """Circuit transitions to half-open after recovery timeout."""
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, name="test", clock=clock)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        clock.advance(29)
        assert breaker.state == CircuitState.OPEN
        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

    async def test_half_open_admits_limited_trial_calls(self):
        """Only half_open_max_calls callers pass while half-open."""
        clock = FakeMonotonic()
        breaker = CircuitBreaker(
            failure_threshold=1,
            recovery_timeout=10,
            half_open_max_calls=2,
            name="test",
            clock=clock,
        )
        breaker.record_failure()
        clock.advance(10)

        await breaker.guard()
        await breaker.guard()
        with pytest.raises(CircuitOpenError):
            await breaker.guard()

    async def test_half_open_closes_after_consecutive_successes(self):
        clock = FakeMonotonic()
        breaker = CircuitBreaker(
            failure_threshold=1, recovery_timeout=10, half_open_max_calls=2, name="test", clock=clock
        )
        breaker.record_failure()
        clock.advance(10)

        await breaker.guard()
        breaker.record_success()
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.guard()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    async def test_failure_in_half_open_reopens_circuit(self):
        """Failure in half-open state reopens the circuit."""
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, name="test", clock=clock)
        breaker.record_failure()
        clock.advance(10)

        await breaker.guard()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_reset_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, name="test")
        breaker.record_failure()
        breaker.reset()
        assert breaker.is_closed

    def test_shared_breaker_per_upstream(self):
        assert get_breaker("polygon") is get_breaker("polygon")
        assert get_breaker("polygon") is not get_breaker("finnhub")


# =============================================================================
# Retry policy
# =============================================================================


class TestRetryPolicy:
    """Exponential backoff with jitter."""

    def test_exponential_growth(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=100, jitter=0)
        assert [policy.backoff(a) for a in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1, max_delay=5, jitter=0)
        assert policy.backoff(10) == 5

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=1, max_delay=100, jitter=0.5)
        for _ in range(50):
            assert 1 <= policy.backoff(0) <= 1.5


class TestParseRetryAfter:
    def test_delta_seconds(self):
        assert parse_retry_after("120") == 120.0

    def test_http_date(self):
        now = datetime(2024, 5, 14, 14, 30, tzinfo=timezone.utc)
        assert parse_retry_after("Tue, 14 May 2024 14:30:45 GMT", now=now) == 45.0

    def test_past_date_is_zero(self):
        now = datetime(2024, 5, 14, 14, 30, tzinfo=timezone.utc)
        assert parse_retry_after("Tue, 14 May 2024 14:00:00 GMT", now=now) == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_unusable(self, value):
        assert parse_retry_after(value) is None


# =============================================================================
# RetryableClient
# =============================================================================


class TestRetryableClient:
    """Retries, permanent failures and breaker integration."""

    async def test_success_merges_default_params(self):
        transport, requests = scripted_transport([httpx.Response(200, json={"ok": True})])
        async with make_client(transport) as client:
            payload = await client.get_json("/calendar/earnings", {"from": "2024-05-14"})

        assert payload == {"ok": True}
        assert requests[0].url.params["token"] == "secret"
        assert requests[0].url.params["from"] == "2024-05-14"

    async def test_retries_server_errors_then_succeeds(self):
        sleep = RecordingSleep()
        transport, requests = scripted_transport(
            [httpx.Response(500), httpx.Response(502), httpx.Response(200, json=[])]
        )
        async with make_client(transport, sleep=sleep) as client:
            assert await client.get_json("/x") == []

        assert len(requests) == 3
        assert sleep.delays == [0.1, 0.2]

    async def test_permanent_error_not_retried(self):
        breaker = CircuitBreaker(name="feed", failure_threshold=1)
        transport, requests = scripted_transport([httpx.Response(404)])
        async with make_client(transport, breaker=breaker) as client:
            with pytest.raises(PermanentUpstreamError) as exc_info:
                await client.get_json("/missing")

        assert len(requests) == 1
        assert exc_info.value.upstream_status == 404
        assert breaker.is_closed

    async def test_retry_after_honored_verbatim(self):
        sleep = RecordingSleep()
        transport, _ = scripted_transport(
            [httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200, json={})]
        )
        async with make_client(transport, sleep=sleep) as client:
            await client.get_json("/x")

        assert sleep.delays == [7.0]

    async def test_exhaustion_raises_transient(self):
        breaker = CircuitBreaker(name="feed", failure_threshold=5)
        sleep = RecordingSleep()
        transport, requests = scripted_transport([httpx.Response(503)])
        async with make_client(transport, breaker=breaker, sleep=sleep) as client:
            with pytest.raises(TransientUpstreamError) as exc_info:
                await client.get_json("/x")

        assert len(requests) == 3
        assert len(sleep.delays) == 2
        assert exc_info.value.attempts == 3
        assert exc_info.value.upstream_status == 503
        # one exhausted call is one breaker failure
        assert breaker.get_stats()["failure_count"] == 1

    async def test_transport_errors_retried(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport, requests = scripted_transport([boom, httpx.Response(200, json={"a": 1})])
        async with make_client(transport) as client:
            assert await client.get_json("/x") == {"a": 1}
        assert len(requests) == 2

    async def test_open_circuit_skips_network(self):
        breaker = CircuitBreaker(name="feed", failure_threshold=1)
        breaker.record_failure()
        transport, requests = scripted_transport([httpx.Response(200, json={})])
        async with make_client(transport, breaker=breaker) as client:
            with pytest.raises(CircuitOpenError):
                await client.get_json("/x")
        assert requests == []

    async def test_repeated_exhaustion_opens_circuit(self):
        breaker = CircuitBreaker(name="feed", failure_threshold=2)
        transport, _ = scripted_transport([httpx.Response(500)])
        async with make_client(transport, breaker=breaker) as client:
            for _ in range(2):
                with pytest.raises(TransientUpstreamError):
                    await client.get_json("/x")
            with pytest.raises(CircuitOpenError):
                await client.get_json("/x")

    async def test_invalid_json_is_transient(self):
        transport, _ = scripted_transport([httpx.Response(200, content=b"<html>")])
        async with make_client(transport) as client:
            with pytest.raises(TransientUpstreamError):
                await client.get_json("/x")


class TestHalfOpenTrialAccounting:
    """Every way a trial call can end settles its half-open slot."""

    @staticmethod
    def half_open_breaker(clock: FakeMonotonic) -> CircuitBreaker:
        breaker = CircuitBreaker(
            name="feed", failure_threshold=1, recovery_timeout=10, half_open_max_calls=1, clock=clock
        )
        breaker.record_failure()
        clock.advance(10)
        assert breaker.state == CircuitState.HALF_OPEN
        return breaker

    async def test_cancelled_trial_releases_slot(self):
        clock = FakeMonotonic()
        breaker = self.half_open_breaker(clock)
        calls = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                await asyncio.sleep(10)
            return httpx.Response(200, json={"ok": True})

        async with make_client(httpx.MockTransport(handler), breaker=breaker) as client:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(client.get_json("/x"), 0.05)

            clock.advance(10_000)
            assert breaker.state == CircuitState.HALF_OPEN

            assert await client.get_json("/x") == {"ok": True}

        assert breaker.state == CircuitState.CLOSED

    async def test_non_transport_http_error_reopens(self):
        clock = FakeMonotonic()
        breaker = self.half_open_breaker(clock)

        def redirect_loop(request):
            raise httpx.TooManyRedirects("Exceeded maximum allowed redirects.", request=request)

        transport, requests = scripted_transport([redirect_loop])
        async with make_client(transport, breaker=breaker) as client:
            with pytest.raises(TransientUpstreamError):
                await client.get_json("/x")

        assert len(requests) == 1
        assert breaker.state == CircuitState.OPEN

    async def test_non_transport_http_error_counts_when_closed(self):
        breaker = CircuitBreaker(name="feed", failure_threshold=5)

        def undecodable(request):
            raise httpx.DecodingError("bad gzip stream", request=request)

        transport, _ = scripted_transport([undecodable])
        async with make_client(transport, breaker=breaker) as client:
            with pytest.raises(TransientUpstreamError):
                await client.get_json("/x")

        assert breaker.get_stats()["failure_count"] == 1

    async def test_permanent_error_closes_half_open(self):
        clock = FakeMonotonic()
        breaker = self.half_open_breaker(clock)
        transport, _ = scripted_transport([httpx.Response(404)])

        async with make_client(transport, breaker=breaker) as client:
            with pytest.raises(PermanentUpstreamError):
                await client.get_json("/missing")

        assert breaker.state == CircuitState.CLOSED

    def test_release_outside_half_open_is_noop(self):
        breaker = CircuitBreaker(name="feed")
        breaker.release_trial()
        assert breaker.is_closed
