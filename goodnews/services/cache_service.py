"""
Shared TTL cache persisted in the document store.

Entries live in the ``shared_cache`` collection as
``{value, timestamp, expiresAt}``. A read is a hit only when the entry
exists, holds a value and ``now - timestamp < ttl``.

The cache is best-effort: store failures are logged and treated as a miss
(reads) or a no-op (writes). Nothing in the pipeline depends on it for
correctness.

Invalidation is an explicit delete. A read that was already in flight when
the delete committed may still return the previous value; callers accept
that short stale window (the same eventual consistency every instance's
own TTL gives them anyway).
"""

import logging
import time
from typing import Any, Callable, Iterable, List, Optional

from goodnews.models.article import CATEGORIES, ORDER_BY_FIELDS
from goodnews.services.document_store import DocumentStore


CACHE_COLLECTION = "shared_cache"

# Page sizes the clients actually request; used to enumerate cache keys to drop
COMMON_LIMITS = (10, 20, 50)


def category_key(category: str, order_by: str, limit: int) -> str:
    return f"category_{category}_{order_by}_{limit}"


def trending_key(limit: int) -> str:
    return f"trending_{limit}"


def all_key(order_by: str, limit: int) -> str:
    return f"all_{order_by}_{limit}"


CATEGORY_STATS_KEY = "categoryStats"
TRENDING_KEY = "trendingArticles"
BATCH_METADATA_KEY = "batchMetadata"


def related_keys(category: Optional[str] = None) -> List[str]:
    """Cache keys whose contents can change when an article changes."""
    keys = [CATEGORY_STATS_KEY, TRENDING_KEY, BATCH_METADATA_KEY]
    keys.extend(trending_key(limit) for limit in COMMON_LIMITS)
    for order_by in ORDER_BY_FIELDS:
        keys.extend(all_key(order_by, limit) for limit in COMMON_LIMITS)
    categories = [category] if category else list(CATEGORIES)
    for cat in categories:
        for order_by in ORDER_BY_FIELDS:
            keys.extend(category_key(cat, order_by, limit) for limit in COMMON_LIMITS)
    return keys


class TTLCache:
    """Key/value cache with per-read TTL checks."""

    def __init__(
        self,
        store: DocumentStore,
        default_ttl_minutes: float = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_ttl_minutes = default_ttl_minutes
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.hits = 0
        self.misses = 0

    async def get(self, key: str, ttl_minutes: Optional[float] = None) -> Optional[Any]:
        ttl_seconds = (ttl_minutes if ttl_minutes is not None else self.default_ttl_minutes) * 60
        try:
            entry = await self.store.get(CACHE_COLLECTION, key)
        except Exception as e:
            self.logger.warning(f"Cache read failed for {key}: {e}")
            self.misses += 1
            return None

        if not entry or entry.get("value") is None:
            self.misses += 1
            return None

        age = self.clock() - float(entry.get("timestamp", 0))
        if age >= ttl_seconds:
            self.misses += 1
            return None

        self.hits += 1
        return entry["value"]

    async def set(self, key: str, value: Any, ttl_minutes: Optional[float] = None) -> None:
        ttl_seconds = (ttl_minutes if ttl_minutes is not None else self.default_ttl_minutes) * 60
        now = self.clock()
        try:
            await self.store.set(
                CACHE_COLLECTION,
                key,
                {"value": value, "timestamp": now, "expiresAt": now + ttl_seconds},
            )
        except Exception as e:
            self.logger.warning(f"Cache write failed for {key}: {e}")

    async def invalidate(self, keys: Iterable[str]) -> int:
        """Delete the given keys in one batch. Returns how many were requested."""
        unique = list(dict.fromkeys(keys))
        if not unique:
            return 0
        try:
            batch = self.store.batch()
            for key in unique:
                batch.delete(CACHE_COLLECTION, key)
            await batch.commit()
            self.logger.debug(f"Invalidated {len(unique)} cache keys")
        except Exception as e:
            self.logger.warning(f"Cache invalidation failed: {e}")
            return 0
        return len(unique)

    async def invalidate_related(self, category: Optional[str] = None) -> int:
        return await self.invalidate(related_keys(category))

    async def clear(self) -> int:
        cleared = await self.store.delete_collection(CACHE_COLLECTION)
        self.logger.warning(f"Cleared {cleared} cache entries")
        return cleared

    def get_stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
