"""
backend/tests/test_fixture_result_cache.py

Purpose:
    Freshness contract of the cached result gateway: finished results are
    kept, live results expire quickly, failures are never cached.
"""

from __future__ import annotations

import asyncio

import pytest

from betsettle.services.errors import TransientFetchFailure
from betsettle.services.fixture_result_service import CachedResultGateway
from conftest import ScriptedGateway, finished, not_finished


@pytest.mark.asyncio
async def test_finished_result_is_served_from_cache():
    inner = ScriptedGateway({"1": finished(1, 2, 0)})
    cached = CachedResultGateway(inner, live_ttl=60, final_ttl=3600)

    first = await cached.get_result("1")
    second = await cached.get_result(1)

    assert first == second
    assert inner.calls == ["1"]


@pytest.mark.asyncio
async def test_live_result_expires_and_is_refetched():
    inner = ScriptedGateway()
    inner.set(1, not_finished(1), finished(1, 1, 1))
    cached = CachedResultGateway(inner, live_ttl=0, final_ttl=3600)

    assert (await cached.get_result("1")).finished is False
    assert (await cached.get_result("1")).finished is True
    assert inner.calls == ["1", "1"]


@pytest.mark.asyncio
async def test_failures_are_not_cached():
    inner = ScriptedGateway()
    inner.set(1, TransientFetchFailure("timeout"), finished(1, 0, 0))
    cached = CachedResultGateway(inner, live_ttl=60, final_ttl=3600)

    with pytest.raises(TransientFetchFailure):
        await cached.get_result("1")
    assert (await cached.get_result("1")).finished is True


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_fetch():
    inner = ScriptedGateway({"7": finished(7, 3, 2)})
    cached = CachedResultGateway(inner, live_ttl=60, final_ttl=3600)

    results = await asyncio.gather(*(cached.get_result("7") for _ in range(10)))

    assert all(r.home_goals == 3 for r in results)
    assert inner.calls == ["7"]


@pytest.mark.asyncio
async def test_invalidate_drops_cached_result():
    inner = ScriptedGateway({"1": finished(1, 2, 0)})
    cached = CachedResultGateway(inner, live_ttl=60, final_ttl=3600)

    await cached.get_result("1")
    cached.invalidate("1")
    await cached.get_result("1")

    assert inner.calls == ["1", "1"]


@pytest.mark.asyncio
async def test_expired_entries_are_pruned_on_write():
    inner = ScriptedGateway({"1": not_finished(1), "2": finished(2, 1, 0)})
    cached = CachedResultGateway(inner, live_ttl=0, final_ttl=3600)

    await cached.get_result("1")
    await cached.get_result("2")

    assert set(cached._cache) == {"2"}


@pytest.mark.asyncio
async def test_fetch_locks_are_dropped_after_use():
    inner = ScriptedGateway()
    inner.set(1, finished(1, 2, 0))
    inner.set(2, TransientFetchFailure("timeout"))
    cached = CachedResultGateway(inner, live_ttl=60, final_ttl=3600)

    await asyncio.gather(*(cached.get_result("1") for _ in range(5)))
    with pytest.raises(TransientFetchFailure):
        await cached.get_result("2")

    assert cached._locks == {}
    assert cached._lock_users == {}
