import pytest

from goodnews.pipeline.api import USERS, CallContext, GoodNewsAPI
from goodnews.pipeline.ingestion_scheduler import DailyCounter, IngestionScheduler
from goodnews.services.article_store import ARTICLES
from goodnews.services.concurrency_guard import ConcurrencyGuard
from goodnews.services.content_classifier import ContentClassifier, KeywordClassifier
from goodnews.services.fetch_orchestrator import FetchOrchestrator
from goodnews.services.rate_limiter import RateLimiterRegistry
from goodnews.services.retry import RetryExecutor
from goodnews.utils.hashing import derive_article_id

from conftest import FakeProvider, make_enriched, make_raws


@pytest.fixture
def api(settings, store, cache, article_store, tracker, clock):
    guard = ConcurrencyGuard(max_concurrent=3, window_seconds=30, clock=clock)
    return GoodNewsAPI(
        settings, store, cache, article_store, tracker, guard,
        rate_limiters=RateLimiterRegistry({"newsdata": 30}),
    )


@pytest.fixture
def api_with_scheduler(api, article_store, store, clock, no_sleep):
    provider = FakeProvider("newsdata", 1, make_raws(2))
    orchestrator = FetchOrchestrator(
        [provider],
        RateLimiterRegistry({"newsdata": 100}, sleep=no_sleep),
        RetryExecutor(sleep=no_sleep),
        max_attempts=1,
    )
    api.scheduler = IngestionScheduler(
        orchestrator,
        ContentClassifier(KeywordClassifier()),
        article_store,
        DailyCounter(store, clock=clock),
        instance_id="test",
    )
    return api, provider


async def seed(article_store, link="https://x.test/story"):
    await article_store.upsert_batch([], [make_enriched(link)])
    return derive_article_id(link)


async def test_oversized_payload_is_rejected(api):
    response = await api.call("getTrendingArticles", {"blob": "x" * 11 * 1024})
    assert response["error"]["code"] == "invalid-argument"
    assert response["error"]["details"]["limit"] == 10 * 1024


async def test_unknown_operation(api):
    response = await api.call("deleteEverything", {})
    assert response["error"]["code"] == "invalid-argument"
    assert response["error"]["details"] == {"field": "operation"}


async def test_bookmark_requires_authentication(api, article_store):
    article_id = await seed(article_store)
    response = await api.call("toggleBookmark", {"articleId": article_id})
    assert response["error"]["code"] == "unauthenticated"

    response = await api.call("toggleBookmark", {"articleId": article_id}, CallContext(user_id="u1"))
    assert response == {"bookmarked": True}


async def test_concurrent_request_limit(api):
    context = CallContext(user_id="busy-user")
    for _ in range(3):
        assert "error" not in await api.call("getCategoryStats", {}, context)

    response = await api.call("getCategoryStats", {}, context)

    assert response["error"]["code"] == "resource-exhausted"
    assert response["error"]["details"]["reason"] == "CONCURRENT_REQUEST_LIMIT_EXCEEDED"
    assert response["error"]["details"]["retryAfter"] == 30
    assert "error" not in await api.call("getCategoryStats", {}, CallContext(user_id="someone-else"))


async def test_anonymous_callers_are_not_throttled(api):
    for _ in range(10):
        assert "error" not in await api.call("getCategoryStats", {})


async def test_admin_operations(api, settings, store, cache):
    await cache.set("categoryStats", {"stats": {}})

    denied = await api.call("clearCache", {}, CallContext(user_id="regular"))
    assert denied["error"]["code"] == "permission-denied"

    settings.security.admin_user_ids = ["configured-admin"]
    response = await api.call("clearCache", {}, CallContext(user_id="configured-admin"))
    assert response == {"success": True, "cleared": 1}

    await store.set(USERS, "flagged-admin", {"isAdmin": True})
    assert "error" not in await api.call("clearCache", {}, CallContext(user_id="flagged-admin"))

    await store.set(USERS, "truthy-admin", {"isAdmin": "yes"})
    response = await api.call("clearCache", {}, CallContext(user_id="truthy-admin"))
    assert response["error"]["code"] == "permission-denied"


async def test_get_article_by_id_tracks_view_for_signed_in_callers(api, article_store, store):
    article_id = await seed(article_store)

    anonymous = await api.call("getArticleById", {"articleId": article_id})
    assert anonymous["article"]["id"] == article_id
    assert (await store.get(ARTICLES, article_id))["views"] == 0

    await api.call("getArticleById", {"articleId": article_id}, CallContext(user_id="u1"))
    assert (await store.get(ARTICLES, article_id))["views"] == 1


async def test_get_article_by_id_errors(api):
    missing = await api.call("getArticleById", {"articleId": derive_article_id("https://x.test/none")})
    assert missing["error"]["code"] == "not-found"

    malformed = await api.call("getArticleById", {"articleId": "abc"})
    assert malformed["error"]["code"] == "invalid-argument"


async def test_track_share_validates_platform(api, article_store, store):
    article_id = await seed(article_store)

    assert await api.call("trackShare", {"articleId": article_id, "platform": "facebook"}) == {"success": True}
    bad = await api.call("trackShare", {"articleId": article_id, "platform": 42})
    assert bad["error"]["details"] == {"field": "platform"}

    article = await store.get(ARTICLES, article_id)
    assert article["sharesByPlatform"]["facebook"] == 1


async def test_category_listing_accepts_lowercase(api, article_store):
    await seed(article_store)
    response = await api.call("getArticlesByCategory", {"category": "science", "limit": 5})
    assert len(response["articles"]) == 1

    invalid = await api.call("getArticlesByCategory", {"category": "gossip"})
    assert invalid["error"]["details"] == {"field": "category"}


async def test_unexpected_errors_are_masked(api, article_store, monkeypatch):
    async def broken():
        raise RuntimeError("x" * 300)

    monkeypatch.setattr(article_store, "category_stats", broken)
    response = await api.call("getCategoryStats", {})

    assert response["error"]["code"] == "internal"
    assert response["error"]["message"] == "An internal error occurred"
    assert len(response["error"]["details"]["error"]) == 100


async def test_fetch_without_scheduler(api, settings):
    settings.security.admin_user_ids = ["ops"]
    response = await api.call("fetchGoodNews", {}, CallContext(user_id="ops"))
    assert response["error"]["code"] == "internal"


@pytest.mark.parametrize("operation", ["fetchGoodNews", "manualTriggerNewsFetch"])
async def test_ingestion_requires_admin(api_with_scheduler, settings, operation):
    api, provider = api_with_scheduler

    for _ in range(5):
        anonymous = await api.call(operation, {})
        assert anonymous["error"]["code"] == "unauthenticated"
    regular = await api.call(operation, {}, CallContext(user_id="regular"))
    assert regular["error"]["code"] == "permission-denied"
    assert provider.calls == []

    settings.security.admin_user_ids = ["ops"]
    response = await api.call(operation, {}, CallContext(user_id="ops"))
    assert response["status"] == "success"
    assert response["filteredCount"] == 2
    assert len(provider.calls) == 1


async def test_health_check(api):
    response = await api.call("healthCheck")
    assert response["status"] == "healthy"
    assert response["checks"]["store"] == "ok"
    assert response["checks"]["ai"] == "not_configured"
    assert response["checks"]["providers"]["newsdata"] == "missing_key"
    assert "newsdata" in response["checks"]["rate_limits"]


async def test_health_check_reports_ingestion_state(api_with_scheduler, settings):
    api, _ = api_with_scheduler
    settings.security.admin_user_ids = ["ops"]
    await api.call("fetchGoodNews", {}, CallContext(user_id="ops"))

    checks = (await api.call("healthCheck"))["checks"]

    assert checks["fetch"]["strategy"] == "priority"
    assert [p["name"] for p in checks["fetch"]["providers"]] == ["newsdata"]
    assert checks["errors"]["total_errors"] == 0
    assert checks["last_run"]["status"] == "success"
