"""Shared provider backpressure.

Every worker consults the persisted `ProviderRateLimitState` before calling a
provider and sleeps until ``backoff_until`` has passed. A 429 from the
provider pushes ``backoff_until`` out exponentially; a success resets the
streak. Writes are last-writer-wins upserts: a stale read costs at most one
redundant 429.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable

from src.models.takeoff import ProviderRateLimitState
from src.services.interfaces import MetricsClient
from src.services.metrics import NullMetrics
from src.services.state_store import TakeoffStateStore

LOG = logging.getLogger("takeoff.rate_limiter")

RATE_LIMIT_BASE_MS = 60_000
RATE_LIMIT_JITTER_MS = 10_000
RATE_LIMIT_MAX_MS = 300_000


def compute_rate_limit_backoff_ms(consecutive_429s: int, jitter_ms: float = 0.0) -> float:
    """``min(base * 2^(n-1) + jitter, cap)``; ``n`` below 1 is treated as 1."""
    exponent = max(consecutive_429s, 1) - 1
    return min(RATE_LIMIT_BASE_MS * (2 ** exponent) + jitter_ms, RATE_LIMIT_MAX_MS)


def _default_jitter_ms() -> float:
    return random.uniform(0, RATE_LIMIT_JITTER_MS)


class ProviderRateLimiter:
    """Reads and updates per-provider backoff state in the shared store."""

    def __init__(
        self,
        store: TakeoffStateStore,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        jitter_ms: Callable[[], float] = _default_jitter_ms,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._store = store
        self._sleep = sleep
        self._clock = clock
        self._jitter_ms = jitter_ms
        self._metrics = metrics or NullMetrics()

    async def check_backpressure(self, provider: str) -> float:
        """Wait out an active backoff window; returns the seconds waited."""
        state = await asyncio.to_thread(self._store.get_rate_limit, provider)
        if state is None or not state.backoff_until:
            return 0.0
        remaining = state.backoff_until - self._clock()
        if remaining <= 0:
            return 0.0
        LOG.info(
            "provider_backpressure_wait",
            extra={
                "provider": provider,
                "wait_ms": int(remaining * 1000),
                "consecutive_429s": state.consecutive_429s,
            },
        )
        self._metrics.increment("backpressure_waits_total", stage="rate_limiter", provider=provider)
        await self._sleep(remaining)
        return remaining

    def record_success(self, provider: str) -> ProviderRateLimitState:
        state = self._store.get_rate_limit(provider)
        if state is not None and state.consecutive_429s == 0:
            return state
        state = state or ProviderRateLimitState(provider=provider)
        state.consecutive_429s = 0
        return self._store.upsert_rate_limit(state)

    def record_rate_limit(self, provider: str) -> ProviderRateLimitState:
        now = self._clock()
        state = self._store.get_rate_limit(provider) or ProviderRateLimitState(provider=provider)
        state.consecutive_429s += 1
        backoff_ms = compute_rate_limit_backoff_ms(state.consecutive_429s, self._jitter_ms())
        state.backoff_until = now + backoff_ms / 1000.0
        state.last_429_at = now
        saved = self._store.upsert_rate_limit(state)
        self._metrics.increment("provider_rate_limited_total", stage="rate_limiter", provider=provider)
        LOG.warning(
            "provider_rate_limited",
            extra={
                "provider": provider,
                "consecutive_429s": state.consecutive_429s,
                "backoff_ms": int(backoff_ms),
            },
        )
        return saved


__all__ = [
    "ProviderRateLimiter",
    "compute_rate_limit_backoff_ms",
    "RATE_LIMIT_BASE_MS",
    "RATE_LIMIT_JITTER_MS",
    "RATE_LIMIT_MAX_MS",
]
