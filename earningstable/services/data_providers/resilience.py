"""
Resilience patterns for upstream feed calls.

This module provides:
1. Circuit Breaker - Fail fast after repeated failures inside a rolling window
2. Retry policy - Exponential backoff with jitter, honoring Retry-After
3. RetryableClient - httpx client combining both, one breaker per upstream

Usage:
    from earningstable.services.data_providers.resilience import RetryableClient

    async with RetryableClient("polygon", settings.polygon_base_url,
                               default_params={"apiKey": key}) as client:
        payload = await client.get_json("/v3/reference/tickers/AAPL")

Only transport errors, HTTP 5xx and HTTP 429 are retried. Any other 4xx
raises PermanentUpstreamError at once and is not counted by the breaker.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

import httpx

from earningstable.core.config import settings
from earningstable.core.exceptions import (
    CircuitOpenError,
    PermanentUpstreamError,
    TransientUpstreamError,
)
from earningstable.core.logging import get_logger

logger = get_logger("resilience")


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing fast, blocking calls
    HALF_OPEN = "half_open"  # Admitting a few trial calls


@dataclass
class CircuitBreaker:
    """
    Circuit breaker with a rolling failure window and multi-call half-open.

    States:
    - CLOSED: Normal operation, counting consecutive failures
    - OPEN: ``failure_threshold`` failures within ``failure_window`` seconds,
      all calls blocked for ``recovery_timeout`` seconds
    - HALF_OPEN: up to ``half_open_max_calls`` trial calls; that many
      successes close the circuit, any failure re-opens it

    Args:
        name: Upstream identifier for logging and errors
        failure_threshold: Failures inside the window before opening
        failure_window: Rolling window length in seconds
        recovery_timeout: Seconds to stay open before going half-open
        half_open_max_calls: Trial calls admitted while half-open
        clock: Monotonic time source (injectable for tests)
    """

    name: str = "circuit"
    failure_threshold: int = 5
    failure_window: float = 60.0
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 2
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: deque[float] = field(default_factory=deque, init=False)
    _opened_at: float | None = field(default=None, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _half_open_successes: int = field(default=0, init=False)

    @property
    def state(self) -> CircuitState:
        """Current circuit state (moves OPEN to HALF_OPEN once the cooldown passed)."""
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self.clock() - self._opened_at >= self.recovery_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    async def guard(self) -> None:
        """
        Guard entry to protected code. Raises CircuitOpenError if open.

        While half-open, only ``half_open_max_calls`` callers get through.
        """
        state = self.state

        if state == CircuitState.OPEN:
            remaining = self.recovery_timeout - (self.clock() - (self._opened_at or 0))
            raise CircuitOpenError(
                self.name, f"Circuit open, retry in {max(remaining, 0):.1f}s"
            )

        if state == CircuitState.HALF_OPEN:
            if self._half_open_calls >= self.half_open_max_calls:
                raise CircuitOpenError(self.name, "Circuit half-open, trial calls exhausted")
            self._half_open_calls += 1
            logger.info(
                f"[{self.name}] Circuit half-open, trial call "
                f"{self._half_open_calls}/{self.half_open_max_calls}"
            )

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.half_open_max_calls:
                self._transition(CircuitState.CLOSED)
            return
        self._failures.clear()

    def record_failure(self) -> None:
        """Record a failed call. Opens circuit after threshold failures in the window."""
        now = self.clock()

        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, now)
            return

        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.failure_window:
            self._failures.popleft()

        if len(self._failures) >= self.failure_threshold and self._state != CircuitState.OPEN:
            self._transition(CircuitState.OPEN, now)
        else:
            logger.debug(
                f"[{self.name}] Failure {len(self._failures)}/{self.failure_threshold}"
            )

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call ended without an outcome."""
        if self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
            self._half_open_calls -= 1
            logger.debug(f"[{self.name}] Half-open trial call released without outcome")

    def reset(self) -> None:
        """Force reset to closed state."""
        self._transition(CircuitState.CLOSED)

    def _transition(self, new_state: CircuitState, now: float | None = None) -> None:
        old_state = self._state
        self._state = new_state
        self._half_open_calls = 0
        self._half_open_successes = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = now if now is not None else self.clock()
            logger.warning(
                f"[{self.name}] Circuit OPEN ({old_state.value} -> open), "
                f"cooldown {self.recovery_timeout:.0f}s"
            )
        elif new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._failures.clear()
            if old_state != CircuitState.CLOSED:
                logger.info(f"[{self.name}] Circuit closed after successful recovery")
        else:
            logger.info(f"[{self.name}] Circuit half-open after cooldown")

    def get_stats(self) -> dict[str, Any]:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": len(self._failures),
            "failure_threshold": self.failure_threshold,
            "failure_window": self.failure_window,
            "recovery_timeout": self.recovery_timeout,
        }


_breakers: dict[str, CircuitBreaker] = {}


def get_breaker(name: str) -> CircuitBreaker:
    """Shared breaker for one upstream, configured from settings."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(
            name=name,
            failure_threshold=settings.breaker_failure_threshold,
            failure_window=settings.breaker_failure_window,
            recovery_timeout=settings.breaker_recovery_timeout,
            half_open_max_calls=settings.breaker_half_open_max_calls,
        )
        _breakers[name] = breaker
    return breaker


def reset_breakers() -> None:
    """Drop every shared breaker (tests)."""
    _breakers.clear()


# =============================================================================
# Retry with Exponential Backoff
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy.

    Args:
        max_attempts: Maximum number of attempts (including initial)
        base_delay: Delay before the first retry, in seconds
        max_delay: Cap on the computed delay
        jitter: Upper bound of the uniform random seconds added to each delay
    """

    max_attempts: int = 3
    base_delay: float = 0.3
    max_delay: float = 5.0
    jitter: float = 0.3

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def backoff(self, attempt: int) -> float:
        """Delay after the 0-based ``attempt`` failed."""
        delay = self.base_delay * (2**attempt)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return min(delay, self.max_delay)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


# =============================================================================
# Retrying HTTP client
# =============================================================================


class RetryableClient:
    """
    httpx.AsyncClient wrapper with per-upstream circuit breaker and retries.

    Args:
        name: Upstream name (breaker key, error prefix)
        base_url: Upstream base URL
        default_params: Query params added to every request (API keys)
        timeout: Per-request timeout in seconds
        policy: Retry policy (defaults from settings)
        breaker: Circuit breaker (defaults to the shared one for ``name``)
        transport: Optional httpx transport (``httpx.MockTransport`` in tests)
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        default_params: dict[str, str] | None = None,
        timeout: float | None = None,
        policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self.policy = policy or RetryPolicy.from_settings()
        self.breaker = breaker or get_breaker(name)
        self._default_params = dict(default_params or {})
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout if timeout is not None else settings.external_api_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> RetryableClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_request(
        self, method: str, path: str, params: dict[str, Any] | None = None
    ) -> httpx.Request:
        merged = {**self._default_params, **(params or {})}
        return self._client.build_request(method, path, params=merged)

    async def call(self, request: httpx.Request) -> httpx.Response:
        """
        Send ``request`` with retries.

        Every call that passed the breaker records exactly one outcome.
        A cancelled call records none and gives its half-open slot back.

        Raises:
            CircuitOpenError: Breaker open, network not touched
            PermanentUpstreamError: 4xx other than 429
            TransientUpstreamError: Retries exhausted, or a non-retryable
                httpx error (redirect loop, undecodable body)
        """
        await self.breaker.guard()

        try:
            response = await self._send_with_retries(request)
        except PermanentUpstreamError:
            # upstream answered; not a breaker failure
            self.breaker.record_success()
            raise
        except asyncio.CancelledError:
            self.breaker.release_trial()
            raise
        except BaseException:
            self.breaker.record_failure()
            raise

        self.breaker.record_success()
        return response

    async def _send_with_retries(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        last_status: int | None = None
        last_error = ""

        for attempt in range(self.policy.max_attempts):
            retry_after: float | None = None
            logger.debug(
                f"[{self.name}] {request.method} {path} attempt "
                f"{attempt + 1}/{self.policy.max_attempts}"
            )
            try:
                response = await self._client.send(request)
            except httpx.TransportError as exc:
                last_status = None
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(f"[{self.name}] {path} network error: {last_error}")
            except httpx.HTTPError as exc:
                logger.error(f"[{self.name}] {path} failed: {type(exc).__name__}: {exc}")
                raise TransientUpstreamError(
                    self.name, f"{type(exc).__name__} for {path}", attempts=attempt + 1
                ) from exc
            else:
                status_code = response.status_code
                if status_code < 400:
                    return response
                if not is_retryable_status(status_code):
                    logger.warning(f"[{self.name}] {path} rejected with HTTP {status_code}")
                    raise PermanentUpstreamError(
                        self.name, f"HTTP {status_code} for {path}", status=status_code
                    )
                last_status = status_code
                last_error = f"HTTP {status_code}"
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                logger.warning(f"[{self.name}] {path} returned HTTP {status_code}")

            if attempt + 1 >= self.policy.max_attempts:
                break

            delay = retry_after if retry_after is not None else self.policy.backoff(attempt)
            logger.info(
                f"[{self.name}] Backing off {delay:.2f}s before retry {attempt + 2}"
                f"{' (Retry-After)' if retry_after is not None else ''}"
            )
            await self._sleep(delay)

        logger.error(
            f"[{self.name}] {path} failed after {self.policy.max_attempts} attempts: {last_error}"
        )
        raise TransientUpstreamError(
            self.name,
            f"{last_error} for {path}",
            status=last_status,
            attempts=self.policy.max_attempts,
        )

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and decode the JSON body."""
        response = await self.call(self.build_request("GET", path, params))
        try:
            return response.json()
        except ValueError as exc:
            raise TransientUpstreamError(
                self.name, f"Invalid JSON from {path}", status=response.status_code
            ) from exc
