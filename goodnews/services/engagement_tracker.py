"""
Engagement counters: views, shares and bookmarks.

Every mutation is a store-side atomic increment (never read-modify-write)
and adds the configured weight to ``trendingScore`` in the same write, so
the score is always exactly ``views*Wv + saves*Ws + shares*Wsh`` of the
events applied. After each mutation the listings that include the article
are invalidated.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from goodnews.models.article import normalize_platform
from goodnews.services.article_store import ARTICLES
from goodnews.services.cache_service import TTLCache
from goodnews.services.document_store import ArrayRemove, ArrayUnion, DocumentStore, Increment
from goodnews.settings import TrendingWeights
from goodnews.utils.errors import ResourceNotFound, Unauthenticated, ValidationError
from goodnews.utils.hashing import require_article_id


USER_BOOKMARKS = "user_bookmarks"


class EngagementTracker:

    def __init__(
        self,
        store: DocumentStore,
        cache: TTLCache,
        weights: Optional[TrendingWeights] = None,
        bookmark_limit: int = 30,
        lookup_chunk_size: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cache = cache
        self.weights = weights or TrendingWeights()
        self.bookmark_limit = bookmark_limit
        self.lookup_chunk_size = lookup_chunk_size
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    async def _require_article(self, article_id: str) -> Dict[str, Any]:
        article = await self.store.get(ARTICLES, article_id)
        if article is None:
            raise ResourceNotFound("Article", article_id)
        return article

    async def toggle_bookmark(self, user_id: Optional[str], article_id: str) -> Dict[str, bool]:
        if not user_id:
            raise Unauthenticated("Authentication required to bookmark articles")
        require_article_id(article_id)

        bookmarks, article = await asyncio.gather(
            self.store.get(USER_BOOKMARKS, user_id),
            self.store.get(ARTICLES, article_id),
        )
        if article is None:
            raise ResourceNotFound("Article", article_id)

        current = (bookmarks or {}).get("articleIds") or []
        is_bookmarked = article_id in current
        now = self.clock()

        batch = self.store.batch()
        if is_bookmarked:
            batch.set(USER_BOOKMARKS, user_id, {
                "articleIds": ArrayRemove(article_id),
                "updatedAt": now,
            }, merge=True)
            batch.update(ARTICLES, article_id, {
                "saves": Increment(-1),
                "trendingScore": Increment(-self.weights.saves),
            })
        else:
            batch.set(USER_BOOKMARKS, user_id, {
                "articleIds": ArrayUnion(article_id),
                "updatedAt": now,
            }, merge=True)
            batch.update(ARTICLES, article_id, {
                "saves": Increment(1),
                "trendingScore": Increment(self.weights.saves),
            })
        await batch.commit()

        await self.cache.invalidate_related(article.get("category"))
        bookmarked = not is_bookmarked
        self.logger.info(f"User {user_id} {'bookmarked' if bookmarked else 'removed bookmark for'} {article_id}")
        return {"bookmarked": bookmarked}

    async def track_view(self, article_id: str) -> Dict[str, bool]:
        require_article_id(article_id)
        article = await self._require_article(article_id)
        await self.store.update(ARTICLES, article_id, {
            "views": Increment(1),
            "trendingScore": Increment(self.weights.views),
            "lastViewedAt": self.clock(),
        })
        await self.cache.invalidate_related(article.get("category"))
        return {"success": True}

    async def track_share(self, article_id: str, platform: Optional[str] = None) -> Dict[str, Any]:
        require_article_id(article_id)
        article = await self._require_article(article_id)
        platform = normalize_platform(platform)
        await self.store.update(ARTICLES, article_id, {
            "shares": Increment(1),
            f"sharesByPlatform.{platform}": Increment(1),
            "trendingScore": Increment(self.weights.shares),
            "lastSharedAt": self.clock(),
        })
        await self.cache.invalidate_related(article.get("category"))
        return {"success": True, "platform": platform}

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.bookmark_limit
        try:
            value = int(limit)
        except (TypeError, ValueError) as e:
            raise ValidationError("limit must be an integer", field="limit") from e
        if value < 1:
            raise ValidationError("limit must be at least 1", field="limit")
        return min(value, self.bookmark_limit)

    async def user_bookmarks(self, user_id: Optional[str], limit: Optional[int] = None) -> Dict[str, Any]:
        if not user_id:
            raise Unauthenticated("Authentication required to view bookmarks")
        limit = self._clamp_limit(limit)

        bookmarks = await self.store.get(USER_BOOKMARKS, user_id)
        article_ids: List[str] = (bookmarks or {}).get("articleIds") or []
        if not article_ids:
            return {"articles": [], "count": 0}

        # Most recent bookmarks first
        selected = list(reversed(article_ids))[:limit]
        found: Dict[str, Dict[str, Any]] = {}
        for i in range(0, len(selected), self.lookup_chunk_size):
            found.update(await self.store.get_many(ARTICLES, selected[i:i + self.lookup_chunk_size]))

        articles = [found[article_id] for article_id in selected if article_id in found]
        return {"articles": articles, "count": len(articles)}

    async def is_bookmarked(self, user_id: str, article_id: str) -> bool:
        bookmarks = await self.store.get(USER_BOOKMARKS, user_id)
        return article_id in ((bookmarks or {}).get("articleIds") or [])
