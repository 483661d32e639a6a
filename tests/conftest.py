import asyncio
from types import SimpleNamespace
from typing import Any, List, Optional

import pytest

from goodnews.models.article import EnrichedArticle, RawArticle
from goodnews.services.article_store import ArticleStore
from goodnews.services.cache_service import TTLCache
from goodnews.services.document_store import DocumentStore
from goodnews.services.engagement_tracker import EngagementTracker
from goodnews.services.news_providers import ProviderFetcher
from goodnews.settings import ProviderSettings, Settings


START = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, headers=None, text: str = "", json_error=None):
        self.status = status
        self.payload = payload
        self.headers = headers or {}
        self._text = text
        self.json_error = json_error

    async def json(self, content_type=None):
        if self.json_error is not None:
            raise self.json_error
        return self.payload

    async def text(self) -> str:
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; replays queued responses."""

    closed = False

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[tuple] = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, params))
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self):
        self.closed = True


class FakeModels:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: List[dict] = []

    async def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return SimpleNamespace(text=response, usage_metadata=None)


def fake_genai_client(*responses):
    models = FakeModels(responses)
    return SimpleNamespace(aio=SimpleNamespace(models=models)), models


class FakeProvider(ProviderFetcher):
    """Provider returning canned articles (or raising) without any HTTP."""

    def __init__(self, name: str, priority: int, articles=None, error: Optional[Exception] = None,
                 categories=("technology",), delay: float = 0):
        super().__init__(ProviderSettings(
            name=name,
            base_url="https://provider.invalid",
            api_key="test-key",
            priority=priority,
            categories=list(categories),
        ))
        self.articles = list(articles or [])
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def fetch_category(self, category: str) -> List[RawArticle]:
        self.calls.append(category)
        self.request_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.articles)


def make_raw(title: str, link: str, source: str = "Test Source") -> RawArticle:
    return RawArticle(title=title, link=link, source_name=source, provider_tag="test")


def make_raws(count: int, prefix: str = "https://news.test/a", title: str = "Volunteers plant a community garden") -> List[RawArticle]:
    return [make_raw(f"{title} #{i}", f"{prefix}/{i}") for i in range(count)]


def make_enriched(link: str, title: str = "Scientists announce a breakthrough",
                  category: str = "SCIENCE", summary: str = "A hopeful result.") -> EnrichedArticle:
    return EnrichedArticle(title=title, link=link, summary=summary, category=category, source_name="Test Source")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def settings():
    return Settings(instance_id="test")


@pytest.fixture
async def store(tmp_path):
    store = DocumentStore(str(tmp_path / "goodnews.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def cache(store, clock):
    return TTLCache(store, default_ttl_minutes=5, clock=clock)


@pytest.fixture
def article_store(store, cache, settings, clock):
    return ArticleStore(store, cache, settings, clock=clock)


@pytest.fixture
def tracker(store, cache, settings, clock):
    return EngagementTracker(store, cache, settings.weights, bookmark_limit=30, clock=clock)
