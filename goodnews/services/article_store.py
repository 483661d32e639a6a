"""
Article persistence and read paths.

Writes: ``upsert_batch`` stores one ingestion run as a single atomic batch
(articles + latest-news summary + batch metadata). Articles are keyed by
the content-addressed id of their link, so re-ingesting a story overwrites
its content but keeps its engagement counters.

Reads: category, all-articles and trending listings are cache-through
against the shared TTL cache, ordered by an allow-listed field, and
paginated with an opaque last-seen-id cursor.
"""

import json
import logging
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from goodnews.models.article import (
    CATEGORIES,
    ENGAGEMENT_FIELDS,
    ORDER_BY_FIELDS,
    BatchMetadata,
    BatchResult,
    EnrichedArticle,
    VALID_PLATFORMS,
    RawArticle,
    empty_platform_counts,
)
from goodnews.services.cache_service import (
    CATEGORY_STATS_KEY,
    TTLCache,
    all_key,
    category_key,
    trending_key,
)
from goodnews.services.document_store import DocumentStore, Increment
from goodnews.settings import Settings
from goodnews.utils.errors import CapacityExceeded, StoreError, ValidationError
from goodnews.utils.hashing import derive_article_id, is_valid_article_id, require_article_id


ARTICLES = "articles"
CONTENT = "content"
LATEST_NEWS = "latest_news"
BATCH_METADATA = "batch_metadata"

# latest_news + batch_metadata written alongside the articles
EXTRA_BATCH_WRITES = 2


def _chunks(items: List[str], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class ArticleStore:

    def __init__(
        self,
        store: DocumentStore,
        cache: TTLCache,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # Writes

    def _check_capacity(self, enriched: List[EnrichedArticle]) -> None:
        operations = len(enriched) + EXTRA_BATCH_WRITES
        if operations > self.settings.store.batch_limit:
            raise CapacityExceeded(
                f"Batch would contain {operations} writes (limit {self.settings.store.batch_limit})",
                {"operations": operations, "limit": self.settings.store.batch_limit},
            )
        size = len(json.dumps([a.to_dict() for a in enriched], ensure_ascii=False).encode("utf-8"))
        if size > self.settings.store.max_payload_bytes:
            raise CapacityExceeded(
                f"Batch payload is {size} bytes (limit {self.settings.store.max_payload_bytes})",
                {"bytes": size, "limit": self.settings.store.max_payload_bytes},
            )

    async def _existing_documents(self, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Existence lookups in fixed-size chunks instead of one read per article."""
        existing: Dict[str, Dict[str, Any]] = {}
        for chunk in _chunks(ids, self.settings.store.lookup_chunk_size):
            existing.update(await self.store.get_many(ARTICLES, chunk))
        return existing

    def new_batch_id(self) -> str:
        return f"batch_{int(self.clock() * 1000)}_{self.settings.instance_id}"

    async def upsert_batch(
        self,
        raw: List[RawArticle],
        enriched: List[EnrichedArticle],
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        self._check_capacity(enriched)

        for article in enriched:
            missing = article.missing_fields()
            if missing:
                raise ValidationError(f"Article {article.link[:80]!r} missing fields: {missing}", field=missing[0])

        now = self.clock()
        batch_id = batch_id or self.new_batch_id()
        expires_at = now + self.settings.store.article_ttl_hours * 3600

        ids = [derive_article_id(article.link) for article in enriched]
        existing = await self._existing_documents(list(dict.fromkeys(ids)))

        batch = self.store.batch()
        by_category: Counter = Counter()
        latest_articles: List[Dict[str, Any]] = []
        new_count = 0
        written = set()

        for article_id, article in zip(ids, enriched):
            if article_id in written:
                continue
            written.add(article_id)
            document = self._article_document(article_id, article, batch_id, now, expires_at)
            previous = existing.get(article_id)
            if previous is not None:
                for name in ENGAGEMENT_FIELDS:
                    if name in previous:
                        document[name] = previous[name]
            else:
                new_count += 1
            batch.set(ARTICLES, article_id, self._merge_write(document), merge=True)
            by_category[article.category] += 1
            latest_articles.append(document)

        stats = {
            "totalFetched": len(raw),
            "goodNewsCount": len(written),
            "byCategory": dict(by_category),
        }
        batch.set(CONTENT, LATEST_NEWS, {
            "articles": latest_articles,
            "lastUpdated": now,
            "stats": stats,
            "batchId": batch_id,
            "source": "ingestion",
        })
        metadata = BatchMetadata(
            batch_id=batch_id,
            article_count=len(written),
            processed_at=now,
            expires_at=now + self.settings.store.metadata_ttl_days * 86400,
            instance_id=self.settings.instance_id,
        )
        batch.set(BATCH_METADATA, batch_id, metadata.to_document())

        try:
            await batch.commit()
        except Exception as e:
            self.logger.error(f"❌ Batch {batch_id} commit failed, nothing stored: {e}")
            raise StoreError("storeArticles", f"Failed to store batch {batch_id}: {e}") from e

        self.logger.info(
            f"Stored batch {batch_id}: {len(written)} articles "
            f"({new_count} new, {len(written) - new_count} updated)"
        )
        await self.cache.invalidate_related()

        return BatchResult(
            batch_id=batch_id,
            stored_count=len(written),
            new_count=new_count,
            updated_count=len(written) - new_count,
            by_category=dict(by_category),
        )

    def _article_document(
        self,
        article_id: str,
        article: EnrichedArticle,
        batch_id: str,
        now: float,
        expires_at: float,
    ) -> Dict[str, Any]:
        document = {
            "id": article_id,
            "uniqueId": article.link,
            "title": article.title,
            "summary": article.summary,
            "category": article.category,
            "link": article.link,
            "source": article.source_name,
            "publishedOriginal": article.published_at.isoformat() if article.published_at else None,
            "batchId": batch_id,
            "publishedAt": now,
            "expiresAt": expires_at,
            "isActive": True,
            "views": 0,
            "saves": 0,
            "shares": 0,
            "sharesByPlatform": empty_platform_counts(),
            "trendingScore": 0,
        }
        if article.positivity_score is not None:
            document["positivityScore"] = article.positivity_score
        return document

    @staticmethod
    def _merge_write(document: Dict[str, Any]) -> Dict[str, Any]:
        """
        The write applied inside the commit: content fields overwrite,
        counters become Increment(0) so a counter bumped after our existence
        lookup is kept instead of being reset to the value we read.
        """
        write = {name: value for name, value in document.items() if name not in ENGAGEMENT_FIELDS}
        write["views"] = Increment(0)
        write["saves"] = Increment(0)
        write["shares"] = Increment(0)
        write["trendingScore"] = Increment(0)
        write["sharesByPlatform"] = {platform: Increment(0) for platform in VALID_PLATFORMS}
        return write

    async def write_fallback_latest(self, articles: List[Dict[str, Any]]) -> None:
        """Point the latest-news summary at previously stored articles."""
        await self.store.set(CONTENT, LATEST_NEWS, {
            "articles": articles,
            "lastUpdated": self.clock(),
            "source": "fallback_cache",
            "stats": {
                "totalFetched": 0,
                "goodNewsCount": len(articles),
                "byCategory": dict(Counter(a.get("category") for a in articles if a.get("category"))),
            },
        })
        await self.cache.invalidate([CATEGORY_STATS_KEY])

    # Reads

    async def get(self, article_id: str) -> Optional[Dict[str, Any]]:
        require_article_id(article_id)
        return await self.store.get(ARTICLES, article_id)

    def _clamp_limit(self, limit: Optional[int], maximum: int) -> int:
        try:
            value = int(limit) if limit is not None else 20
        except (TypeError, ValueError) as e:
            raise ValidationError("limit must be an integer", field="limit") from e
        if value < 1:
            raise ValidationError("limit must be at least 1", field="limit")
        return min(value, maximum)

    @staticmethod
    def _check_order_by(order_by: str) -> str:
        if order_by not in ORDER_BY_FIELDS:
            raise ValidationError(
                f"Invalid orderBy field. Must be one of: {', '.join(ORDER_BY_FIELDS)}",
                field="orderBy",
            )
        return order_by

    async def _resolve_cursor(self, cursor: Optional[str]) -> Optional[str]:
        """A usable cursor id, or None (first page) when it is malformed or gone."""
        if not cursor:
            return None
        if not is_valid_article_id(cursor):
            self.logger.warning(f"Ignoring malformed cursor {str(cursor)[:40]!r}")
            return None
        if await self.store.get(ARTICLES, cursor) is None:
            self.logger.warning(f"Cursor {cursor} not found, returning first page")
            return None
        return cursor

    async def _listing(
        self,
        cache_key: str,
        ttl_minutes: float,
        filters: List[Tuple[str, str, Any]],
        order_by: str,
        limit: int,
        cursor: Optional[str],
    ) -> Dict[str, Any]:
        cursor = await self._resolve_cursor(cursor)
        if cursor is None:
            cached = await self.cache.get(cache_key, ttl_minutes)
            if cached is not None:
                return cached

        query = self.store.query(ARTICLES)
        for field_name, op, value in filters:
            query = query.where(field_name, op, value)
        query = query.order_by(order_by, descending=True).limit(limit)
        if cursor:
            query = query.start_after(cursor)
        try:
            rows = await query.fetch()
        except ValidationError:
            # Cursor vanished between resolution and query (retention sweep)
            rows = await query.start_after(None).fetch()
            cursor = None

        articles = [document for _, document in rows]
        result = {"articles": articles, "hasMore": len(articles) >= limit}
        if cursor is None:
            await self.cache.set(cache_key, result, ttl_minutes)
        return result

    async def by_category(
        self,
        category: str,
        limit: Optional[int] = 20,
        order_by: str = "publishedAt",
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        if category not in CATEGORIES:
            raise ValidationError(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}", field="category")
        order_by = self._check_order_by(order_by)
        limit = self._clamp_limit(limit, self.settings.store.max_articles_per_call)
        return await self._listing(
            category_key(category, order_by, limit),
            self.settings.cache.trending_ttl,
            [("category", "==", category), ("isActive", "==", True)],
            order_by,
            limit,
            cursor,
        )

    async def all_articles(
        self,
        limit: Optional[int] = 20,
        order_by: str = "publishedAt",
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        order_by = self._check_order_by(order_by)
        limit = self._clamp_limit(limit, self.settings.store.max_articles_per_call)
        return await self._listing(
            all_key(order_by, limit),
            self.settings.cache.trending_ttl,
            [("isActive", "==", True)],
            order_by,
            limit,
            cursor,
        )

    async def trending(self, limit: Optional[int] = 10) -> Dict[str, Any]:
        limit = self._clamp_limit(limit, self.settings.limits.trending_limit)
        key = trending_key(limit)
        cached = await self.cache.get(key, self.settings.cache.trending_ttl)
        if cached is not None:
            return cached

        since = self.clock() - self.settings.limits.trending_window_hours * 3600
        rows = await (
            self.store.query(ARTICLES)
            .where("isActive", "==", True)
            .where("publishedAt", ">", since)
            .order_by("trendingScore", descending=True)
            .limit(limit)
            .fetch()
        )
        result = {"articles": [document for _, document in rows]}
        await self.cache.set(key, result, self.settings.cache.trending_ttl)
        return result

    async def category_stats(self) -> Dict[str, Any]:
        cached = await self.cache.get(CATEGORY_STATS_KEY, self.settings.cache.category_stats_ttl)
        if cached is not None:
            return cached
        latest = await self.store.get(CONTENT, LATEST_NEWS) or {}
        stats = latest.get("stats") or {"totalFetched": 0, "goodNewsCount": 0, "byCategory": {}}
        result = {"stats": stats, "lastUpdated": latest.get("lastUpdated"), "batchId": latest.get("batchId")}
        await self.cache.set(CATEGORY_STATS_KEY, result, self.settings.cache.category_stats_ttl)
        return result

    async def latest_news(self) -> Optional[Dict[str, Any]]:
        return await self.store.get(CONTENT, LATEST_NEWS)

    async def recent_active(self, limit: int = 5) -> List[Dict[str, Any]]:
        rows = await (
            self.store.query(ARTICLES)
            .where("isActive", "==", True)
            .order_by("publishedAt", descending=True)
            .limit(limit)
            .fetch()
        )
        return [document for _, document in rows]

    async def articles_from_latest_batch(self, limit: int = 10) -> List[Dict[str, Any]]:
        batches = await self.store.query(BATCH_METADATA).order_by("processedAt", descending=True).limit(1).fetch()
        if not batches:
            return []
        _, metadata = batches[0]
        rows = await (
            self.store.query(ARTICLES)
            .where("batchId", "==", metadata.get("batchId"))
            .where("isActive", "==", True)
            .limit(limit)
            .fetch()
        )
        return [document for _, document in rows]
