import logging
import time
from typing import Callable, Dict

from goodnews.services.article_store import ARTICLES, BATCH_METADATA
from goodnews.services.cache_service import CACHE_COLLECTION
from goodnews.services.document_store import DocumentStore


class RetentionSweeper:
    """
    Deletes expired documents in bounded pages.

    Each page is one query plus one batch delete, repeated until a query
    comes back empty. Ingestion can keep writing meanwhile: new articles are
    never older than the cutoff, and each delete only touches the documents
    it just read.
    """

    def __init__(
        self,
        store: DocumentStore,
        article_ttl_hours: float = 48,
        metadata_ttl_days: float = 7,
        page_size: int = 500,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.article_ttl_hours = article_ttl_hours
        self.metadata_ttl_days = metadata_ttl_days
        self.page_size = page_size
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    async def sweep_collection(self, collection: str, field_name: str, cutoff: float) -> int:
        deleted = 0
        pages = 0
        while True:
            rows = await (
                self.store.query(collection)
                .where(field_name, "<", cutoff)
                .limit(self.page_size)
                .fetch()
            )
            if not rows:
                break
            batch = self.store.batch()
            for doc_id, _ in rows:
                batch.delete(collection, doc_id)
            await batch.commit()
            deleted += len(rows)
            pages += 1
            self.logger.debug(f"{collection}: deleted page {pages} ({len(rows)} documents)")
        if deleted:
            self.logger.info(f"🧹 {collection}: removed {deleted} expired documents in {pages} page(s)")
        return deleted

    async def sweep(self) -> int:
        """Delete articles whose ingestion time is older than the article TTL."""
        cutoff = self.clock() - self.article_ttl_hours * 3600
        return await self.sweep_collection(ARTICLES, "publishedAt", cutoff)

    async def sweep_all(self) -> Dict[str, int]:
        now = self.clock()
        return {
            ARTICLES: await self.sweep(),
            BATCH_METADATA: await self.sweep_collection(
                BATCH_METADATA, "processedAt", now - self.metadata_ttl_days * 86400
            ),
            CACHE_COLLECTION: await self.sweep_collection(CACHE_COLLECTION, "expiresAt", now),
        }
