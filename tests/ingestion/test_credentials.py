"""
Tests for outbound credential providers
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from ingestion.fetchers.credentials import RefreshingCredentialProvider, StaticCredentialProvider


@pytest.mark.asyncio
async def test_static_provider():
    provider = StaticCredentialProvider("abc")
    assert await provider.get_token() == "abc"


@pytest.mark.asyncio
async def test_refreshing_provider_caches_until_max_age():
    now = [0.0]
    fetch = AsyncMock(side_effect=["token-1", "token-2"])
    provider = RefreshingCredentialProvider(fetch, max_age=600, clock=lambda: now[0])

    assert await provider.get_token() == "token-1"
    now[0] = 599.0
    assert await provider.get_token() == "token-1"
    assert fetch.await_count == 1

    now[0] = 600.0
    assert await provider.get_token() == "token-2"
    assert fetch.await_count == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh():
    calls = 0

    async def slow_fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return "shared"

    provider = RefreshingCredentialProvider(slow_fetch, max_age=60)

    tokens = await asyncio.gather(*[provider.get_token() for _ in range(5)])

    assert tokens == ["shared"] * 5
    assert calls == 1
    assert provider.refresh_count == 1


@pytest.mark.asyncio
async def test_invalidate_forces_refresh():
    fetch = AsyncMock(side_effect=["first", "second"])
    provider = RefreshingCredentialProvider(fetch, max_age=600)

    assert await provider.get_token() == "first"
    provider.invalidate()
    assert await provider.get_token() == "second"


@pytest.mark.asyncio
async def test_failed_refresh_uses_fallback():
    fetch = AsyncMock(side_effect=RuntimeError("auth service down"))
    provider = RefreshingCredentialProvider(fetch, max_age=600, fallback_token="anon")

    assert await provider.get_token() == "anon"
