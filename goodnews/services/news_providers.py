"""
News provider adapters.

Each provider turns one category into a list of normalized ``RawArticle``s.
Requests are kept to the parameters every plan tier accepts (one category,
one country, one language, at most 10 results) because anything wider is
rejected by the free tiers with a validation error.

Retries and rate limiting are applied by the orchestrator, not here.
"""

import asyncio
import logging
import ssl
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import certifi
from dateutil import parser as dateutil_parser

from goodnews.models.article import RawArticle
from goodnews.settings import ProviderSettings
from goodnews.utils.errors import ConfigError, ProviderError, QuotaExhausted, RateLimitError

logger = logging.getLogger(__name__)


# Monday (0) .. Sunday (6); one category per day keeps the free tier at a few calls
DAILY_THEMES = (
    "technology",
    "science",
    "health",
    "environment",
    "technology",
    "science",
    "health",
)

DEFAULT_RETRY_AFTER = 60
MAX_PAGE_SIZE = 10


def daily_theme(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return DAILY_THEMES[now.weekday()]


def parse_published(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = dateutil_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ProviderFetcher:
    """
    Base adapter: session handling, HTTP error mapping and item filtering.

    Subclasses declare the request parameters and how one response item maps
    onto a ``RawArticle``.
    """

    # Provider category name for each of our theme names
    CATEGORY_MAP: Dict[str, str] = {}

    def __init__(
        self,
        settings: ProviderSettings,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.name = settings.name
        self.priority = settings.priority
        self.enabled = settings.enabled
        self.api_key = settings.api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session = session
        self._owns_session = session is None
        self.clock = clock
        self.logger = logger
        self.request_count = 0

    @property
    def categories(self) -> List[str]:
        """Target categories for this run: configured list or today's theme."""
        if self.settings.categories:
            return list(self.settings.categories)
        return [daily_theme(self.clock())]

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp ClientSession with proper SSL configuration."""
        if self.session is None or self.session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self.session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)
            self._owns_session = True
        return self.session

    async def close(self):
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def _require_credentials(self) -> None:
        if not self.api_key:
            raise ConfigError(f"{self.name} API key not configured")

    def build_params(self, category: str) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_items(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def to_raw_article(self, item: Dict[str, Any]) -> RawArticle:
        raise NotImplementedError

    async def fetch_category(self, category: str) -> List[RawArticle]:
        """Fetch one category. Raises typed errors; never retries."""
        self._require_credentials()
        params = self.build_params(category)
        payload = await self._get_json(params)

        articles: List[RawArticle] = []
        skipped = 0
        for item in self.extract_items(payload):
            try:
                article = self.to_raw_article(item)
            except (AttributeError, TypeError, KeyError) as e:
                self.logger.debug(f"{self.name}: unreadable item skipped ({e})")
                skipped += 1
                continue
            if not article.is_valid():
                self.logger.debug(f"{self.name}: invalid item skipped: {str(item.get('title'))[:60]!r}")
                skipped += 1
                continue
            articles.append(article)

        self.logger.info(
            f"{self.name}: {len(articles)} valid articles for '{category}'"
            + (f" ({skipped} skipped)" if skipped else "")
        )
        return articles

    async def _get_json(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        self.request_count += 1
        try:
            async with session.get(self.settings.base_url, params=params, timeout=self.timeout) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    try:
                        retry_after = int(retry_after) if retry_after else DEFAULT_RETRY_AFTER
                    except ValueError:
                        retry_after = DEFAULT_RETRY_AFTER
                    raise RateLimitError(self.name, retry_after=retry_after)
                if response.status == 402:
                    raise QuotaExhausted(self.name)
                if response.status >= 400:
                    body = await response.text()
                    raise ProviderError(
                        self.name,
                        status=response.status,
                        message=f"{self.name} API error {response.status}: {body[:200]}",
                    )
                payload = await response.json(content_type=None)
        except (RateLimitError, QuotaExhausted, ProviderError):
            raise
        except asyncio.TimeoutError as e:
            raise ProviderError(self.name, status=503, message=f"{self.name} request timed out") from e
        except aiohttp.ClientError as e:
            raise ProviderError(self.name, status=503, message=f"{self.name} unavailable: {e}") from e
        except ValueError as e:
            raise ProviderError(self.name, status=502, message=f"{self.name} returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise ProviderError(self.name, status=502, message=f"{self.name} returned an unexpected payload")
        return payload

    def _provider_category(self, category: str) -> str:
        category = (category or "").lower()
        return self.CATEGORY_MAP.get(category, category)


class NewsDataProvider(ProviderFetcher):
    """newsdata.io /latest endpoint."""

    CATEGORY_MAP = {
        "technology": "technology",
        "science": "science",
        "health": "health",
        "environment": "environment",
        "community": "top",
        "animals": "environment",
        "innovation": "technology",
    }

    def build_params(self, category: str) -> Dict[str, Any]:
        return {
            "apikey": self.api_key,
            "country": self.settings.country,
            "language": self.settings.language,
            "category": self._provider_category(category),
            "size": min(self.settings.page_size, MAX_PAGE_SIZE),
        }

    def extract_items(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        if payload.get("status") == "error":
            results = payload.get("results") or {}
            message = results.get("message") if isinstance(results, dict) else None
            raise ProviderError(self.name, status=422, message=f"{self.name} rejected request: {message}")
        results = payload.get("results") or []
        return [item for item in results if isinstance(item, dict)]

    def to_raw_article(self, item: Dict[str, Any]) -> RawArticle:
        return RawArticle(
            title=(item.get("title") or "").strip(),
            link=(item.get("link") or "").strip(),
            source_name=item.get("source_name") or item.get("source_id") or "Unknown",
            description=item.get("description") or "",
            published_at=parse_published(item.get("pubDate")),
            provider_tag=self.name,
        )


class GNewsProvider(ProviderFetcher):
    """gnews.io /top-headlines endpoint."""

    CATEGORY_MAP = {
        "technology": "technology",
        "science": "science",
        "health": "health",
        "environment": "science",
        "community": "nation",
        "animals": "science",
        "innovation": "technology",
    }

    def build_params(self, category: str) -> Dict[str, Any]:
        return {
            "apikey": self.api_key,
            "category": self._provider_category(category),
            "lang": self.settings.language,
            "country": self.settings.country,
            "max": min(self.settings.page_size, MAX_PAGE_SIZE),
        }

    def extract_items(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        if payload.get("errors"):
            raise ProviderError(self.name, status=422, message=f"{self.name} rejected request: {payload['errors']}")
        return [item for item in payload.get("articles") or [] if isinstance(item, dict)]

    def to_raw_article(self, item: Dict[str, Any]) -> RawArticle:
        source = item.get("source") or {}
        return RawArticle(
            title=(item.get("title") or "").strip(),
            link=(item.get("url") or "").strip(),
            source_name=source.get("name") if isinstance(source, dict) and source.get("name") else "Unknown",
            description=item.get("description") or "",
            published_at=parse_published(item.get("publishedAt")),
            provider_tag=self.name,
        )


PROVIDER_CLASSES = {
    "newsdata": NewsDataProvider,
    "gnews": GNewsProvider,
}


def build_providers(
    provider_settings: List[ProviderSettings],
    timeout_seconds: float = 10.0,
    session: Optional[aiohttp.ClientSession] = None,
) -> List[ProviderFetcher]:
    providers = []
    for settings in provider_settings:
        cls = PROVIDER_CLASSES.get(settings.name)
        if cls is None:
            logger.warning(f"Unknown provider '{settings.name}' in settings, skipping")
            continue
        providers.append(cls(settings, timeout_seconds=timeout_seconds, session=session))
    return providers
