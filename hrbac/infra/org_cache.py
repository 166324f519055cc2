from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass

import structlog
from redis.exceptions import RedisError

from hrbac.infra import redis_state

logger = structlog.get_logger(__name__)

ORG_CACHE_TTL_MINUTES = int(os.getenv("ORG_CACHE_TTL_MINUTES", "15"))
ORG_CACHE_MAX_ENTRIES = int(os.getenv("ORG_CACHE_MAX_ENTRIES", "1000"))
ORG_KEY_PREFIX = "hrbac:org:"
ORG_INDEX_KEY = "hrbac:org-index"


@dataclass(frozen=True)
class OrgCacheEntry:
    org_id: str
    org_name: str
    parent_org_id: str | None
    root_org_id: str
    active: bool


class OrgCache:
    """LRU lookup cache for org records kept in Redis.

    Entries expire after the TTL; a sorted set scored by last access time
    bounds the number of entries, evicting the least recently used ones.
    """

    def __init__(self, *, ttl_minutes: int | None = None, max_entries: int | None = None) -> None:
        self.ttl_seconds = (ttl_minutes if ttl_minutes is not None else ORG_CACHE_TTL_MINUTES) * 60
        self.max_entries = max_entries if max_entries is not None else ORG_CACHE_MAX_ENTRIES

    def _key(self, org_id: str) -> str:
        return f"{ORG_KEY_PREFIX}{org_id}"

    def get(self, org_id: str) -> OrgCacheEntry | None:
        redis = redis_state.get_redis()
        raw = redis.get(self._key(org_id))
        if raw is None:
            redis.zrem(ORG_INDEX_KEY, org_id)
            return None
        redis.zadd(ORG_INDEX_KEY, {org_id: time.time()})
        return OrgCacheEntry(**json.loads(raw))

    def set(self, entry: OrgCacheEntry) -> None:
        if self.max_entries <= 0:
            return
        redis = redis_state.get_redis()
        redis.set(self._key(entry.org_id), json.dumps(asdict(entry)), ex=self.ttl_seconds)
        redis.zadd(ORG_INDEX_KEY, {entry.org_id: time.time()})
        overflow = int(redis.zcard(ORG_INDEX_KEY)) - self.max_entries
        if overflow > 0:
            evicted = [member for member, _score in redis.zpopmin(ORG_INDEX_KEY, overflow)]
            redis.delete(*[self._key(org_id) for org_id in evicted])
            logger.debug("org cache evicted entries", evicted=evicted)

    def invalidate(self, org_id: str) -> None:
        try:
            redis = redis_state.get_redis()
            redis.delete(self._key(org_id))
            redis.zrem(ORG_INDEX_KEY, org_id)
        except RedisError as exc:
            logger.warning("org cache invalidation failed", org_id=org_id, error=str(exc))

    def get_or_load(
        self,
        org_id: str,
        loader: Callable[[str], OrgCacheEntry | None],
    ) -> OrgCacheEntry | None:
        try:
            cached = self.get(org_id)
        except RedisError as exc:
            logger.warning("org cache unavailable, reading database", org_id=org_id, error=str(exc))
            return loader(org_id)
        if cached is not None:
            return cached
        entry = loader(org_id)
        if entry is not None:
            try:
                self.set(entry)
            except RedisError as exc:
                logger.warning("org cache write failed", org_id=org_id, error=str(exc))
        return entry
