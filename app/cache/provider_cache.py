"""Persistent cache of resolved phone carriers."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import redis.asyncio as redis

from app.models.scraping import ProviderCacheEntry, utc_now
from app.scrapers.maps_parser import clean_phone
from app.telemetry.logger import get_logger

KEY_PREFIX = "provider_cache"


class ProviderCache:
    """Redis cache mapping normalized phone numbers to carrier names."""

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize cache with TTL.

        Args:
            redis_client: Async Redis client
            ttl_days: Days before an entry is considered stale (default 30)
            clock: Returns the current UTC time
        """
        self.redis_client = redis_client
        self.ttl = timedelta(days=ttl_days)
        self.clock = clock
        self.logger = get_logger("provider_cache")
        self.stats = {"hits": 0, "misses": 0, "writes": 0, "stale": 0}

    @staticmethod
    def _key(normalized: str) -> str:
        return f"{KEY_PREFIX}:{normalized}"

    def _is_fresh(self, entry: ProviderCacheEntry) -> bool:
        cached_at = entry.cached_at
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)
        return self.clock() - cached_at <= self.ttl

    def _decode(self, raw: Any) -> ProviderCacheEntry | None:
        if raw is None:
            return None
        entry = ProviderCacheEntry.model_validate_json(raw)
        if not self._is_fresh(entry):
            self.stats["stale"] += 1
            return None
        return entry

    async def get(self, phone: str) -> str | None:
        """Get a cached provider.

        Args:
            phone: Phone number in any format

        Returns:
            Provider name or None if missing or stale
        """
        normalized = clean_phone(phone)
        if not normalized:
            return None
        entry = self._decode(await self.redis_client.get(self._key(normalized)))
        if entry is None:
            self.stats["misses"] += 1
            return None
        self.stats["hits"] += 1
        return entry.provider

    async def get_many(self, phones: list[str]) -> dict[str, str]:
        """Look up several numbers in one round trip.

        Returns:
            Mapping of the phone numbers as given to their cached provider;
            numbers without a fresh entry are left out
        """
        lookups = [(phone, clean_phone(phone)) for phone in phones]
        lookups = [(phone, normalized) for phone, normalized in lookups if normalized]
        if not lookups:
            return {}

        raws = await self.redis_client.mget([self._key(normalized) for _, normalized in lookups])
        found: dict[str, str] = {}
        for (phone, _), raw in zip(lookups, raws):
            entry = self._decode(raw)
            if entry is None:
                self.stats["misses"] += 1
            else:
                self.stats["hits"] += 1
                found[phone] = entry.provider

        self.logger.info(
            f"Provider cache lookup: {len(found)} of {len(lookups)} cached",
            extra={"operation": "cache_get_many", "hits": len(found), "requested": len(lookups)},
        )
        return found

    async def set(self, phone: str, provider: str) -> None:
        await self.set_many({phone: provider})

    async def set_many(self, providers: dict[str, str]) -> None:
        """Store several resolved providers."""
        if not providers:
            return
        expire_seconds = int(self.ttl.total_seconds())
        now = self.clock()
        async with self.redis_client.pipeline(transaction=False) as pipe:
            for phone, provider in providers.items():
                normalized = clean_phone(phone)
                if not normalized:
                    continue
                entry = ProviderCacheEntry(phone=normalized, provider=provider, cached_at=now)
                pipe.set(self._key(normalized), entry.model_dump_json(), ex=expire_seconds)
                self.stats["writes"] += 1
            await pipe.execute()

    async def invalidate(self, phone: str) -> bool:
        normalized = clean_phone(phone)
        return bool(normalized) and bool(await self.redis_client.delete(self._key(normalized)))

    def get_stats(self) -> dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": self.stats["hits"] / lookups if lookups else 0.0,
            "ttl_days": self.ttl.days,
        }
