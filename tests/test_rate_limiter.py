from __future__ import annotations

import pytest

from src.models.takeoff import ProviderRateLimitState
from src.services.rate_limiter import ProviderRateLimiter, compute_rate_limit_backoff_ms
from src.services.state_store import InMemoryStateStore
from tests.stubs.takeoff_fakes import RecordingSleep


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(store, sleeper, clock, jitter: float = 0.0) -> ProviderRateLimiter:
    return ProviderRateLimiter(store, sleep=sleeper, clock=clock, jitter_ms=lambda: jitter)


@pytest.mark.parametrize(
    "streak,expected",
    [(0, 60000), (1, 60000), (2, 120000), (3, 240000), (4, 300000), (10, 300000)],
)
def test_backoff_doubles_per_consecutive_429(streak, expected):
    assert compute_rate_limit_backoff_ms(streak) == expected


def test_backoff_jitter_is_capped():
    assert compute_rate_limit_backoff_ms(1, 7000) == 67000
    assert compute_rate_limit_backoff_ms(4, 9999) == 300000


@pytest.mark.asyncio
async def test_no_state_means_no_wait():
    sleeper = RecordingSleep()
    limiter = _limiter(InMemoryStateStore(), sleeper, _Clock())

    assert await limiter.check_backpressure("openai") == 0.0
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_rate_limit_pushes_backoff_window_and_waits():
    store = InMemoryStateStore()
    sleeper = RecordingSleep()
    clock = _Clock(1000.0)
    limiter = _limiter(store, sleeper, clock, jitter=500.0)

    state = limiter.record_rate_limit("openai")
    assert state.consecutive_429s == 1
    assert state.last_429_at == 1000.0
    assert state.backoff_until == pytest.approx(1060.5)

    clock.now = 1010.0
    waited = await limiter.check_backpressure("openai")
    assert waited == pytest.approx(50.5)
    assert sleeper.calls == [pytest.approx(50.5)]

    second = limiter.record_rate_limit("openai")
    assert second.consecutive_429s == 2
    assert second.backoff_until == pytest.approx(1010.0 + 120.5)


@pytest.mark.asyncio
async def test_expired_window_does_not_wait():
    store = InMemoryStateStore()
    store.upsert_rate_limit(ProviderRateLimitState(provider="anthropic", consecutive_429s=2, backoff_until=900.0))
    sleeper = RecordingSleep()
    limiter = _limiter(store, sleeper, _Clock(1000.0))

    assert await limiter.check_backpressure("anthropic") == 0.0
    assert sleeper.calls == []


def test_success_resets_streak_and_providers_are_independent():
    store = InMemoryStateStore()
    limiter = _limiter(store, RecordingSleep(), _Clock())
    limiter.record_rate_limit("openai")
    limiter.record_rate_limit("openai")
    limiter.record_rate_limit("anthropic")

    reset = limiter.record_success("openai")

    assert reset.consecutive_429s == 0
    assert store.get_rate_limit("openai").consecutive_429s == 0
    assert store.get_rate_limit("anthropic").consecutive_429s == 1
    assert limiter.record_rate_limit("openai").consecutive_429s == 1


def test_success_for_unknown_provider_creates_clean_state():
    store = InMemoryStateStore()
    limiter = _limiter(store, RecordingSleep(), _Clock())

    state = limiter.record_success("gemini")

    assert state.consecutive_429s == 0
    assert state.backoff_until is None
    assert store.get_rate_limit("gemini") is not None
