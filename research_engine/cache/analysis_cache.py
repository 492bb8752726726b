"""
FX Dashboard — Analysis Cache
──────────────────────────────
Per-subject store of the last successful analysis.

Entries live in Redis when REDIS_URL is reachable, otherwise in
process memory. No expiry is set on the Redis key: an old entry is
still useful as a stale fallback when the generator is throttled,
so freshness is judged from generated_at by the caller.
"""

import json
import logging
import os
from typing import Dict, Optional

import redis.asyncio as aioredis

from research_engine.models.analysis_payload import CacheEntry

log = logging.getLogger("fx.analysis.cache")

REDIS_URL = os.environ.get("REDIS_URL", "")


def key_analysis(subject: str) -> str:
    return f"analysis:{subject.upper()}"


class AnalysisCache:

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = REDIS_URL if redis_url is None else redis_url
        self._redis: Optional[aioredis.Redis] = None
        self._memory: Dict[str, CacheEntry] = {}

    async def get_redis(self) -> Optional[aioredis.Redis]:
        if not self.redis_url:
            return None
        if self._redis:
            try:
                await self._redis.ping()
                return self._redis
            except Exception:
                self._redis = None
        try:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True, socket_timeout=2)
            await self._redis.ping()
            log.info("Redis connected")
            return self._redis
        except Exception as e:
            log.warning(f"Redis unavailable ({e}) - using in-memory cache")
            self._redis = None
            return None

    async def get(self, subject: str) -> Optional[CacheEntry]:
        key = key_analysis(subject)
        r = await self.get_redis()
        if r:
            try:
                raw = await r.get(key)
                if raw:
                    return CacheEntry.from_dict(json.loads(raw))
            except Exception as e:
                log.warning(f"Redis read failed for {key}: {e}")
        return self._memory.get(key)

    async def set(self, entry: CacheEntry) -> None:
        key = key_analysis(entry.subject)
        # Memory copy is always kept so a Redis outage still has a stale fallback
        self._memory[key] = entry
        r = await self.get_redis()
        if r:
            try:
                await r.set(key, json.dumps(entry.to_dict()))
            except Exception as e:
                log.warning(f"Redis write failed for {key}: {e}")

    async def aclose(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None
