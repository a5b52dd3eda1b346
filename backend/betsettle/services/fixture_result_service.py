"""
backend/betsettle/services/fixture_result_service.py

Purpose:
    Fixture result access for the settlement pipeline: an explicit TTL cache
    in front of the configured result gateway, plus the process-wide gateway
    instance.

    Freshness contract: finished results are authoritative and kept for
    FIXTURE_RESULT_FINAL_TTL_SECONDS; unfinished results are only a hint and
    expire after FIXTURE_RESULT_LIVE_TTL_SECONDS. Fetch failures are never
    cached.

Dependencies:
    - betsettle.providers.base
    - betsettle.providers.sportmonks
"""

from __future__ import annotations

import asyncio
import logging
import time

from betsettle.config import settings
from betsettle.models.fixture import FixtureResult
from betsettle.providers.base import BaseResultGateway

logger = logging.getLogger("betsettle.fixture_result_service")


class CachedResultGateway(BaseResultGateway):
    """Wraps any gateway with an in-memory TTL cache keyed by fixture id."""

    name = "cached"

    def __init__(
        self,
        inner: BaseResultGateway,
        live_ttl: int | None = None,
        final_ttl: int | None = None,
    ) -> None:
        self._inner = inner
        self._live_ttl = settings.FIXTURE_RESULT_LIVE_TTL_SECONDS if live_ttl is None else live_ttl
        self._final_ttl = settings.FIXTURE_RESULT_FINAL_TTL_SECONDS if final_ttl is None else final_ttl
        self._cache: dict[str, dict] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def circuit_open(self) -> bool:
        return self._inner.circuit_open

    def _expired(self, entry: dict, now: float) -> bool:
        ttl = self._final_ttl if entry["data"].finished else self._live_ttl
        return now - entry["ts"] >= ttl

    def _get_cached(self, fixture_id: str) -> FixtureResult | None:
        entry = self._cache.get(fixture_id)
        if not entry:
            return None
        if self._expired(entry, time.monotonic()):
            self._cache.pop(fixture_id, None)
            return None
        return entry["data"]

    def _set_cache(self, fixture_id: str, result: FixtureResult) -> None:
        now = time.monotonic()
        for stale in [key for key, entry in self._cache.items() if self._expired(entry, now)]:
            del self._cache[stale]
        self._cache[fixture_id] = {"data": result, "ts": now}

    def invalidate(self, fixture_id: str | None = None) -> None:
        if fixture_id is None:
            self._cache.clear()
        else:
            self._cache.pop(fixture_id, None)

    async def get_result(self, fixture_id: str) -> FixtureResult:
        fixture_id = str(fixture_id)
        cached = self._get_cached(fixture_id)
        if cached is not None:
            return cached

        # One in-flight fetch per fixture; concurrent legs on the same match share it.
        lock = self._locks.setdefault(fixture_id, asyncio.Lock())
        self._lock_users[fixture_id] = self._lock_users.get(fixture_id, 0) + 1
        try:
            async with lock:
                cached = self._get_cached(fixture_id)
                if cached is not None:
                    return cached
                result = await self._inner.get_result(fixture_id)
                self._set_cache(fixture_id, result)
                if result.finished:
                    logger.debug("Cached final result for fixture %s", fixture_id)
                return result
        finally:
            self._lock_users[fixture_id] -= 1
            if not self._lock_users[fixture_id]:
                del self._lock_users[fixture_id]
                del self._locks[fixture_id]

    async def aclose(self) -> None:
        await self._inner.aclose()


_gateway: BaseResultGateway | None = None


def get_gateway() -> BaseResultGateway:
    """Process-wide cached gateway, built lazily around the Sportmonks adapter."""
    global _gateway
    if _gateway is None:
        from betsettle.providers.sportmonks import SportmonksResultGateway
        _gateway = CachedResultGateway(SportmonksResultGateway())
    return _gateway


def set_gateway(gateway: BaseResultGateway | None) -> None:
    global _gateway
    _gateway = gateway
