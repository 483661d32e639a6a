"""
Caller-facing operations.

Transport-agnostic: an RPC or HTTP adapter hands ``GoodNewsAPI.call`` an
operation name, the decoded payload and the caller context, and gets back
either the operation's response dict or ``{"error": {code, message, details}}``.

Every call is screened before dispatch: oversized payloads are rejected
outright and authenticated callers are throttled by the concurrency guard.
"""

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from goodnews.models.article import CATEGORIES
from goodnews.pipeline.ingestion_scheduler import IngestionScheduler
from goodnews.services.article_store import ArticleStore
from goodnews.services.cache_service import TTLCache
from goodnews.services.concurrency_guard import ConcurrencyGuard
from goodnews.services.document_store import DocumentStore
from goodnews.services.engagement_tracker import EngagementTracker
from goodnews.services.rate_limiter import RateLimiterRegistry
from goodnews.settings import Settings
from goodnews.utils.errors import (
    ConcurrencyLimitExceeded,
    GoodNewsError,
    PayloadTooLarge,
    PermissionDenied,
    ResourceNotFound,
    Unauthenticated,
    ValidationError,
    to_error_payload,
)
from goodnews.utils.hashing import require_article_id


USERS = "users"


@dataclass
class CallContext:
    user_id: Optional[str] = None
    # Set by transports that already verified an admin claim
    is_admin: bool = False


Handler = Callable[[Dict[str, Any], CallContext], Awaitable[Dict[str, Any]]]


class GoodNewsAPI:

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        cache: TTLCache,
        articles: ArticleStore,
        engagement: EngagementTracker,
        guard: ConcurrencyGuard,
        scheduler: Optional[IngestionScheduler] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
    ):
        self.settings = settings
        self.store = store
        self.cache = cache
        self.articles = articles
        self.engagement = engagement
        self.guard = guard
        self.scheduler = scheduler
        self.rate_limiters = rate_limiters
        self.started_at = time.monotonic()
        self.logger = logging.getLogger(__name__)

        self.operations: Dict[str, Handler] = {
            "fetchGoodNews": self.fetch_good_news,
            "toggleBookmark": self.toggle_bookmark,
            "trackView": self.track_view,
            "trackShare": self.track_share,
            "getArticlesByCategory": self.get_articles_by_category,
            "getTrendingArticles": self.get_trending_articles,
            "getUserBookmarks": self.get_user_bookmarks,
            "getArticleById": self.get_article_by_id,
            "getCategoryStats": self.get_category_stats,
            "getAllArticles": self.get_all_articles,
            "clearCache": self.clear_cache,
            "manualTriggerNewsFetch": self.manual_trigger_news_fetch,
            "healthCheck": self.health_check,
        }

    async def call(
        self,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
        context: Optional[CallContext] = None,
    ) -> Dict[str, Any]:
        context = context or CallContext()
        payload = payload or {}
        try:
            self._check_payload_size(payload)
            handler = self.operations.get(operation)
            if handler is None:
                raise ValidationError(f"Unknown operation: {operation}", field="operation")
            if not self.guard.admit(context.user_id, operation):
                raise ConcurrencyLimitExceeded(retry_after=int(self.settings.security.window_seconds))
            return await handler(payload, context)
        except GoodNewsError as e:
            self.logger.warning(f"{operation} rejected ({e.code}): {e.message}")
            return {"error": to_error_payload(e)}
        except Exception as e:
            self.logger.error(f"{operation} failed unexpectedly: {e}", exc_info=True)
            return {"error": to_error_payload(e)}

    def _check_payload_size(self, payload: Dict[str, Any]) -> None:
        limit = self.settings.security.max_request_kb * 1024
        try:
            size = len(json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8"))
        except (TypeError, ValueError) as e:
            raise ValidationError("Request payload is not serializable", field="payload") from e
        if size > limit:
            raise PayloadTooLarge(
                f"Request too large. Maximum size is {self.settings.security.max_request_kb}KB",
                {"bytes": size, "limit": limit},
            )

    @staticmethod
    def _require_user(context: CallContext) -> str:
        if not context.user_id:
            raise Unauthenticated()
        return context.user_id

    async def is_admin(self, context: CallContext) -> bool:
        if not context.user_id:
            return False
        if context.is_admin:
            return True
        if context.user_id in self.settings.security.admin_user_ids:
            return True
        user = await self.store.get(USERS, context.user_id)
        return bool(user and user.get("isAdmin") is True)

    async def _require_admin(self, context: CallContext) -> None:
        self._require_user(context)
        if not await self.is_admin(context):
            raise PermissionDenied("Admin privileges required")

    # Operations

    async def _run_ingestion(self) -> Dict[str, Any]:
        if self.scheduler is None:
            raise GoodNewsError("Ingestion is not configured on this instance")
        result = await self.scheduler.run_once()
        return result.to_response()

    async def fetch_good_news(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        # Normally fired by the scheduler; callers need admin rights
        await self._require_admin(context)
        return await self._run_ingestion()

    async def manual_trigger_news_fetch(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        await self._require_admin(context)
        self.logger.info(f"Manual news fetch triggered by {context.user_id}")
        return await self._run_ingestion()

    async def toggle_bookmark(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        user_id = self._require_user(context)
        article_id = require_article_id(payload.get("articleId"))
        return await self.engagement.toggle_bookmark(user_id, article_id)

    async def track_view(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        article_id = require_article_id(payload.get("articleId"))
        await self.engagement.track_view(article_id)
        return {"success": True}

    async def track_share(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        article_id = require_article_id(payload.get("articleId"))
        platform = payload.get("platform")
        if platform is not None and not isinstance(platform, str):
            raise ValidationError("platform must be a string", field="platform")
        await self.engagement.track_share(article_id, platform)
        return {"success": True}

    async def get_articles_by_category(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        category = payload.get("category")
        if not isinstance(category, str) or category.upper() not in CATEGORIES:
            raise ValidationError(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}", field="category")
        return await self.articles.by_category(
            category.upper(),
            limit=payload.get("limit", 20),
            order_by=payload.get("orderBy", "publishedAt"),
            cursor=payload.get("lastDocId") or payload.get("cursor"),
        )

    async def get_all_articles(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        return await self.articles.all_articles(
            limit=payload.get("limit", 20),
            order_by=payload.get("orderBy", "publishedAt"),
            cursor=payload.get("lastDocId") or payload.get("cursor"),
        )

    async def get_trending_articles(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        return await self.articles.trending(payload.get("limit", 10))

    async def get_user_bookmarks(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        user_id = self._require_user(context)
        return await self.engagement.user_bookmarks(user_id, payload.get("limit"))

    async def get_article_by_id(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        article_id = require_article_id(payload.get("articleId"))
        article = await self.articles.get(article_id)
        if article is None:
            raise ResourceNotFound("Article", article_id)
        if context.user_id:
            try:
                await self.engagement.track_view(article_id)
            except GoodNewsError as e:
                self.logger.warning(f"View tracking failed for {article_id}: {e}")
        return {"article": article}

    async def get_category_stats(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        return await self.articles.category_stats()

    async def clear_cache(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        await self._require_admin(context)
        cleared = await self.cache.clear()
        self.logger.warning(f"Cache cleared by admin {context.user_id}")
        return {"success": True, "cleared": cleared}

    async def health_check(self, payload: Dict[str, Any], context: CallContext) -> Dict[str, Any]:
        checks: Dict[str, Any] = {}
        try:
            checks["store"] = "ok" if await self.store.ping() else "fail"
        except Exception as e:
            checks["store"] = f"fail: {str(e)[:100]}"
        checks["ai"] = "configured" if self.settings.has_ai else "not_configured"
        checks["providers"] = {
            p.name: "configured" if p.api_key else "missing_key" for p in self.settings.enabled_providers()
        }
        checks["concurrency"] = self.guard.stats()
        checks["cache"] = self.cache.get_stats()
        if self.rate_limiters is not None:
            checks["rate_limits"] = self.rate_limiters.stats()
        if self.scheduler is not None:
            checks["fetch"] = self.scheduler.orchestrator.get_status()
            checks["errors"] = self.scheduler.error_handler.get_summary()
            if self.scheduler.last_result is not None:
                checks["last_run"] = self.scheduler.last_result.to_response()

        healthy = checks["store"] == "ok"
        return {
            "status": "healthy" if healthy else "unhealthy",
            "version": self.settings.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
            "checks": checks,
        }
