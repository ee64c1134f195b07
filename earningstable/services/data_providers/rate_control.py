"""Adaptive concurrency and batch sizing for per-symbol upstream fan-out."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass

from earningstable.core.config import settings
from earningstable.core.logging import get_logger


logger = get_logger("rate_control")


@dataclass(frozen=True)
class _Sample:
    ok: bool
    latency: float


class AdaptiveBatchLimiter:
    """
    Tunes concurrency and batch size from a rolling window of call outcomes.

    Multiplicative decrease when the error rate or average latency is high,
    additive increase when the window is clean. Values never exceed the
    configured maxima, which encode the upstream's documented rate limit.
    """

    def __init__(
        self,
        name: str,
        concurrency: int,
        batch_size: int,
        max_concurrency: int,
        max_batch_size: int | None = None,
        window: int = 50,
        error_rate_high: float = 0.2,
        error_rate_low: float = 0.02,
        latency_high: float = 2.0,
    ):
        """
        Args:
            name: Identifier for logging
            concurrency: Starting number of concurrent calls
            batch_size: Starting symbols per batch
            max_concurrency: Hard ceiling for concurrency
            max_batch_size: Hard ceiling for batch size (defaults to start value)
            window: Number of recent calls considered
            error_rate_high: Error rate that triggers a decrease
            error_rate_low: Error rate under which an increase is allowed
            latency_high: Average latency (seconds) that triggers a decrease
        """
        self.name = name
        self.max_concurrency = max(1, max_concurrency)
        self.max_batch_size = max(1, max_batch_size or batch_size)
        self.concurrency = max(1, min(concurrency, self.max_concurrency))
        self.batch_size = max(1, min(batch_size, self.max_batch_size))
        self._samples: deque[_Sample] = deque(maxlen=window)
        self._error_rate_high = error_rate_high
        self._error_rate_low = error_rate_low
        self._latency_high = latency_high

    @classmethod
    def from_settings(cls, name: str = "quotes") -> AdaptiveBatchLimiter:
        return cls(
            name=name,
            concurrency=settings.quote_concurrency,
            batch_size=settings.quote_batch_size,
            max_concurrency=settings.quote_max_concurrency,
        )

    def record(self, ok: bool, latency: float) -> None:
        self._samples.append(_Sample(ok=ok, latency=latency))

    @property
    def error_rate(self) -> float:
        if not self._samples:
            return 0.0
        return sum(1 for s in self._samples if not s.ok) / len(self._samples)

    @property
    def avg_latency(self) -> float:
        if not self._samples:
            return 0.0
        return sum(s.latency for s in self._samples) / len(self._samples)

    def semaphore(self) -> asyncio.Semaphore:
        """Fresh semaphore sized to the current concurrency (one per batch)."""
        return asyncio.Semaphore(self.concurrency)

    def adjust(self) -> None:
        """Re-tune after a batch completed."""
        if not self._samples:
            return

        error_rate = self.error_rate
        latency = self.avg_latency
        old = (self.concurrency, self.batch_size)

        if error_rate >= self._error_rate_high or latency >= self._latency_high:
            self.concurrency = max(1, self.concurrency // 2)
            self.batch_size = max(1, self.batch_size // 2)
        elif error_rate <= self._error_rate_low:
            self.concurrency = min(self.max_concurrency, self.concurrency + 1)
            self.batch_size = min(self.max_batch_size, self.batch_size + 10)

        if (self.concurrency, self.batch_size) != old:
            logger.info(
                f"[{self.name}] concurrency {old[0]} -> {self.concurrency}, "
                f"batch {old[1]} -> {self.batch_size} "
                f"(errors {error_rate:.0%}, latency {latency:.2f}s)"
            )

    def status(self) -> dict:
        return {
            "name": self.name,
            "concurrency": self.concurrency,
            "batch_size": self.batch_size,
            "max_concurrency": self.max_concurrency,
            "max_batch_size": self.max_batch_size,
            "error_rate": self.error_rate,
            "avg_latency": self.avg_latency,
        }
