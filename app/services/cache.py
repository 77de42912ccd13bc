"""Fixture & odds cache.

Read-through memoization in front of the match result provider, stored in
Redis so every worker shares it. Entries expire by TTL only; writes are
last-writer-wins. A Redis failure degrades to a cache miss so the caller
simply goes to the provider.

Tiers:
- LIVE: in-play odds and not-yet-finished event states (about a minute)
- FIXTURES: upcoming fixture lists and candidate windows (about an hour)
- LEAGUE: league metadata and finished results (a day)
"""

import hashlib
import json
from enum import Enum
from typing import Any

import redis.asyncio as redis
import structlog

from app.config import get_settlement_config
from app.config.settlement import CacheConfig

logger = structlog.get_logger(__name__)


class CacheTier(str, Enum):
    LIVE = "live"
    FIXTURES = "fixtures"
    LEAGUE = "league"


def event_key(event_id: str) -> str:
    return f"event:{event_id}"


def odds_key(event_id: str) -> str:
    return f"odds:{event_id}"


def fixture_filter_key(**filters: Any) -> str:
    """
    Stable key for a fixture query.

    Filters are sorted so the same query always maps to the same entry;
    long signatures are hashed to keep Redis keys short.
    """
    parts = []
    for name in sorted(filters):
        value = filters[name]
        if isinstance(value, (list, tuple, set)):
            value = ",".join(sorted(str(v) for v in value))
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        parts.append(f"{name}={value}")
    signature = "|".join(parts)
    if len(signature) > 120:
        signature = hashlib.sha1(signature.encode()).hexdigest()
    return f"fixtures:{signature}"


class FixtureCache:
    """Tiered TTL cache over Redis."""

    def __init__(self, redis_client: redis.Redis, config: CacheConfig | None = None):
        self.redis = redis_client
        self.config = config or get_settlement_config().cache
        self.hits = 0
        self.misses = 0

    def ttl_for(self, tier: CacheTier) -> int:
        return {
            CacheTier.LIVE: self.config.live_ttl_seconds,
            CacheTier.FIXTURES: self.config.fixtures_ttl_seconds,
            CacheTier.LEAGUE: self.config.league_ttl_seconds,
        }[CacheTier(tier)]

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None when absent, expired or unreadable."""
        try:
            raw = await self.redis.get(self._key(key))
        except Exception as e:
            logger.warning("cache_get_error", key=key, error=str(e))
            self.misses += 1
            return None

        if raw is None:
            self.misses += 1
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache_entry_corrupt", key=key)
            self.misses += 1
            return None
        self.hits += 1
        return value

    async def set(self, key: str, value: Any, tier: CacheTier) -> None:
        """Store ``value`` under ``key`` with the tier's TTL."""
        try:
            await self.redis.set(
                self._key(key),
                json.dumps(value, default=str),
                ex=self.ttl_for(tier),
            )
        except Exception as e:
            logger.warning("cache_set_error", key=key, tier=CacheTier(tier).value, error=str(e))

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        """Fetch several keys at once; missing keys are left out."""
        if not keys:
            return {}
        try:
            raws = await self.redis.mget([self._key(k) for k in keys])
        except Exception as e:
            logger.warning("cache_mget_error", count=len(keys), error=str(e))
            return {}

        found = {}
        for key, raw in zip(keys, raws):
            if raw is None:
                continue
            try:
                found[key] = json.loads(raw)
            except (TypeError, ValueError):
                continue
        self.hits += len(found)
        self.misses += len(keys) - len(found)
        return found

    def get_stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 3) if total else None,
        }
