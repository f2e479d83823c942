import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from application.dtos.payments import AccessToken
from infrastructure.external.payments.token_cache import TokenCache


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _fetcher(clock, lifetime=3600, delay=0.0):
    calls = []

    async def fetch():
        calls.append(clock())
        if delay:
            await asyncio.sleep(delay)
        return AccessToken(value=f"tok-{len(calls)}", expires_at=clock() + timedelta(seconds=lifetime))

    return fetch, calls


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh():
    clock = _Clock()
    fetch, calls = _fetcher(clock, delay=0.01)
    cache = TokenCache(fetch, refresh_margin_seconds=60, provider="card_wallet", clock=clock)

    tokens = await asyncio.gather(*(cache.get() for _ in range(10)))

    assert len(calls) == 1
    assert {t.value for t in tokens} == {"tok-1"}


@pytest.mark.asyncio
async def test_token_refreshed_inside_margin():
    clock = _Clock()
    fetch, calls = _fetcher(clock, lifetime=3600)
    cache = TokenCache(fetch, refresh_margin_seconds=60, provider="card_wallet", clock=clock)

    assert (await cache.get()).value == "tok-1"
    clock.advance(3000)
    assert (await cache.get()).value == "tok-1"
    clock.advance(560)
    assert (await cache.get()).value == "tok-2"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_margin_clamped_for_short_lived_tokens():
    clock = _Clock()
    fetch, calls = _fetcher(clock, lifetime=30)
    cache = TokenCache(fetch, refresh_margin_seconds=60, provider="mobile_money", clock=clock)

    await cache.get()
    clock.advance(10)
    await cache.get()
    assert len(calls) == 1

    clock.advance(10)
    await cache.get()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalidate_only_drops_matching_token():
    clock = _Clock()
    fetch, calls = _fetcher(clock)
    cache = TokenCache(fetch, refresh_margin_seconds=60, provider="card_wallet", clock=clock)

    first = await cache.get()
    cache.invalidate(AccessToken(value="other", expires_at=first.expires_at))
    assert cache.current == first

    cache.invalidate(first)
    assert cache.current is None
    assert (await cache.get()).value == "tok-2"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached():
    clock = _Clock()
    attempts = []

    async def fetch():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("auth endpoint down")
        return AccessToken(value="tok", expires_at=clock() + timedelta(hours=1))

    cache = TokenCache(fetch, refresh_margin_seconds=60, provider="card_wallet", clock=clock)
    with pytest.raises(RuntimeError):
        await cache.get()
    assert cache.current is None
    assert (await cache.get()).value == "tok"
