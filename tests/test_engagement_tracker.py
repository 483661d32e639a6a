import asyncio

import pytest

from goodnews.services.article_store import ARTICLES
from goodnews.services.engagement_tracker import USER_BOOKMARKS
from goodnews.utils.errors import ResourceNotFound, Unauthenticated, ValidationError
from goodnews.utils.hashing import derive_article_id

from conftest import make_enriched


async def seed(article_store, *links):
    await article_store.upsert_batch([], [make_enriched(link) for link in links])
    return [derive_article_id(link) for link in links]


def trending_of(article, weights):
    return article["views"] * weights.views + article["saves"] * weights.saves + article["shares"] * weights.shares


async def test_engagement_scenario(article_store, tracker, store, settings):
    (article_id,) = await seed(article_store, "https://x.test/story")

    await tracker.track_view(article_id)
    await tracker.track_view(article_id)
    await tracker.track_share(article_id, "twitter")
    assert await tracker.toggle_bookmark("user-1", article_id) == {"bookmarked": True}

    article = await store.get(ARTICLES, article_id)
    assert (article["views"], article["shares"], article["saves"]) == (2, 1, 1)
    assert article["sharesByPlatform"]["twitter"] == 1
    assert article["trendingScore"] == 2 * 1 + 1 * 3 + 1 * 2
    assert article["trendingScore"] == trending_of(article, settings.weights)

    assert await tracker.toggle_bookmark("user-1", article_id) == {"bookmarked": False}
    article = await store.get(ARTICLES, article_id)
    assert article["saves"] == 0
    assert article["trendingScore"] == trending_of(article, settings.weights)
    assert (await store.get(USER_BOOKMARKS, "user-1"))["articleIds"] == []


async def test_unknown_platform_is_counted_as_other(article_store, tracker, store):
    (article_id,) = await seed(article_store, "https://x.test/story")

    result = await tracker.track_share(article_id, "  MySpace ")
    await tracker.track_share(article_id, None)

    assert result == {"success": True, "platform": "other"}
    article = await store.get(ARTICLES, article_id)
    assert article["sharesByPlatform"]["other"] == 2
    assert article["shares"] == 2


async def test_missing_article_and_bad_ids(tracker):
    missing = derive_article_id("https://x.test/never-stored")
    with pytest.raises(ResourceNotFound):
        await tracker.track_view(missing)
    with pytest.raises(ResourceNotFound):
        await tracker.toggle_bookmark("user-1", missing)
    with pytest.raises(ValidationError):
        await tracker.track_share("../../etc/passwd")


async def test_bookmarks_require_a_user(tracker):
    with pytest.raises(Unauthenticated):
        await tracker.toggle_bookmark(None, derive_article_id("https://x.test/1"))
    with pytest.raises(Unauthenticated):
        await tracker.user_bookmarks("")


async def test_bookmarks_listed_most_recent_first(article_store, tracker):
    ids = await seed(article_store, "https://x.test/1", "https://x.test/2", "https://x.test/3")
    for article_id in ids:
        await tracker.toggle_bookmark("user-1", article_id)

    listing = await tracker.user_bookmarks("user-1")
    assert [a["id"] for a in listing["articles"]] == list(reversed(ids))
    assert listing["count"] == 3

    limited = await tracker.user_bookmarks("user-1", limit=2)
    assert [a["id"] for a in limited["articles"]] == [ids[2], ids[1]]
    assert await tracker.user_bookmarks("nobody") == {"articles": [], "count": 0}


async def test_concurrent_views_are_not_lost(article_store, tracker, store, settings):
    (article_id,) = await seed(article_store, "https://x.test/popular")

    await asyncio.gather(*(tracker.track_view(article_id) for _ in range(25)))

    article = await store.get(ARTICLES, article_id)
    assert article["views"] == 25
    assert article["trendingScore"] == 25 * settings.weights.views


async def test_view_invalidates_cached_listings(article_store, tracker):
    (article_id,) = await seed(article_store, "https://x.test/story")
    before = await article_store.trending(limit=10)
    assert before["articles"][0]["views"] == 0

    await tracker.track_view(article_id)

    after = await article_store.trending(limit=10)
    assert after["articles"][0]["views"] == 1


@pytest.mark.parametrize("limit", ["many", 0, -3])
async def test_bookmark_limit_must_be_positive_integer(tracker, limit):
    with pytest.raises(ValidationError) as excinfo:
        await tracker.user_bookmarks("user-1", limit=limit)
    assert excinfo.value.details == {"field": "limit"}
