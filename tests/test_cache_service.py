from goodnews.services.cache_service import (
    CATEGORY_STATS_KEY,
    TTLCache,
    category_key,
    related_keys,
    trending_key,
)
from goodnews.services.document_store import DocumentStore


async def test_set_then_get_is_a_hit(cache):
    await cache.set("k", {"articles": [1, 2]})
    assert await cache.get("k") == {"articles": [1, 2]}
    assert cache.get_stats()["hits"] == 1


async def test_entry_expires_after_ttl(cache, clock):
    await cache.set("k", "v", ttl_minutes=2)
    clock.advance(119)
    assert await cache.get("k", ttl_minutes=2) == "v"
    clock.advance(1)
    assert await cache.get("k", ttl_minutes=2) is None


async def test_invalidate_then_get_is_a_miss(cache):
    await cache.set("k", "v")
    assert await cache.invalidate(["k", "k"]) == 1
    assert await cache.get("k") is None


async def test_none_value_is_a_miss(cache):
    await cache.set("k", None)
    assert await cache.get("k") is None


async def test_invalidate_related_drops_listing_keys(cache):
    await cache.set(category_key("SCIENCE", "publishedAt", 20), "science")
    await cache.set(category_key("HEALTH", "publishedAt", 20), "health")
    await cache.set(trending_key(10), "trending")
    await cache.set(CATEGORY_STATS_KEY, "stats")

    await cache.invalidate_related("SCIENCE")

    assert await cache.get(category_key("SCIENCE", "publishedAt", 20)) is None
    assert await cache.get(trending_key(10)) is None
    assert await cache.get(CATEGORY_STATS_KEY) is None
    assert await cache.get(category_key("HEALTH", "publishedAt", 20)) == "health"


def test_related_keys_without_category_cover_every_category():
    keys = related_keys()
    assert category_key("ANIMALS", "trendingScore", 50) in keys
    assert category_key("SCIENCE", "views", 10) in keys
    assert category_key("ANIMALS", "views", 10) not in related_keys("SCIENCE")


async def test_clear_removes_everything(cache):
    await cache.set("a", 1)
    await cache.set("b", 2)
    assert await cache.clear() == 2
    assert await cache.get("a") is None


async def test_store_failures_degrade_to_misses(clock):
    # Never initialized: every store call fails
    cache = TTLCache(DocumentStore(":memory:"), clock=clock)
    await cache.set("k", "v")
    assert await cache.get("k") is None
    assert await cache.invalidate(["k"]) == 0
