"""
Scheduled ingestion: CheckQuota → Fetch → Classify → Store → UpdateQuota.

Each stage completes before the next starts. Providers and the classifier
degrade internally; only store failures (or unexpected bugs) end a run as
``error``. A run that fetches nothing re-surfaces recently stored articles
instead of leaving the latest-news summary stale.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytz

from goodnews.models.article import EnrichedArticle, RawArticle
from goodnews.services.article_store import ArticleStore
from goodnews.services.content_classifier import ContentClassifier
from goodnews.services.document_store import DocumentStore, Increment
from goodnews.services.fetch_orchestrator import FetchOrchestrator
from goodnews.settings import SchedulerSettings
from goodnews.utils.error_monitoring import ErrorHandler
from goodnews.utils.logging_config import PerformanceTracker, log_pipeline_metrics


DAILY_STATS = "daily_stats"
EXECUTION_LOGS = "execution_logs"
EXECUTION_ERRORS = "execution_errors"

STATUS_SUCCESS = "success"
STATUS_QUOTA_REACHED = "quota_reached"
STATUS_NO_NEW_ARTICLES = "no_new_articles"
STATUS_ERROR = "error"

FALLBACK_LATEST_BATCH = "latest_batch"
FALLBACK_RECENT = "recent_active"


class DailyCounter:
    """Articles processed per UTC day. Rolls over by key, never reset."""

    def __init__(self, store: DocumentStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def today_key(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=pytz.UTC).strftime("%Y-%m-%d")

    async def get(self) -> int:
        doc = await self.store.get(DAILY_STATS, self.today_key())
        return int((doc or {}).get("count", 0))

    async def add(self, count: int) -> None:
        key = self.today_key()
        await self.store.set(DAILY_STATS, key, {
            "count": Increment(count),
            "date": key,
            "lastUpdated": self.clock(),
        }, merge=True)


@dataclass
class RunResult:
    status: str
    raw_count: int = 0
    filtered_count: int = 0
    daily_processed: int = 0
    daily_limit: int = 0
    used_fallback: bool = False
    fallback_count: int = 0
    fallback_source: Optional[str] = None
    classifier_mode: Optional[str] = None
    fetch_status: Optional[str] = None
    batch_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_response(self) -> Dict[str, Any]:
        """Shape returned by the fetchGoodNews operation."""
        response = {
            "status": self.status,
            "rawCount": self.raw_count,
            "filteredCount": self.filtered_count,
            "dailyProcessed": self.daily_processed,
            "dailyLimit": self.daily_limit,
        }
        if self.used_fallback:
            response["usedFallback"] = True
            response["fallbackCount"] = self.fallback_count
        if self.error:
            response["error"] = self.error
        return response


class IngestionScheduler:

    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        classifier: ContentClassifier,
        article_store: ArticleStore,
        counter: DailyCounter,
        daily_limit: int = 40,
        settings: Optional[SchedulerSettings] = None,
        error_handler: Optional[ErrorHandler] = None,
        instance_id: str = "local",
    ):
        self.orchestrator = orchestrator
        self.classifier = classifier
        self.article_store = article_store
        self.counter = counter
        self.daily_limit = daily_limit
        self.settings = settings or SchedulerSettings()
        self.error_handler = error_handler or ErrorHandler()
        self.instance_id = instance_id
        self.store = article_store.store
        self.last_result: Optional[RunResult] = None
        self.shutdown_event = asyncio.Event()
        # Serializes runs so two of them never read the same daily count
        self._run_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    async def run_once(self) -> RunResult:
        if self._run_lock.locked():
            self.logger.info("Ingestion run already in progress, waiting for it to finish")
        async with self._run_lock:
            start = time.monotonic()
            result = await self._run()
            result.duration_ms = (time.monotonic() - start) * 1000
            self.last_result = result
            await self._log_execution(result)
            return result

    async def _run(self) -> RunResult:
        # CheckQuota
        try:
            processed = await self.counter.get()
        except Exception as e:
            return await self._fail(e, "check_quota", RunResult(status=STATUS_ERROR, daily_limit=self.daily_limit))

        if processed >= self.daily_limit:
            self.logger.info(f"Daily limit reached ({processed}/{self.daily_limit}), skipping fetch")
            return RunResult(status=STATUS_QUOTA_REACHED, daily_processed=processed, daily_limit=self.daily_limit)

        # Fetch
        with PerformanceTracker("fetch", self.logger) as tracker:
            fetch_outcome = await self.orchestrator.fetch_with_outcome()
        raw: List[RawArticle] = fetch_outcome.unwrap_or([])
        log_pipeline_metrics(self.logger, "fetch", 0, len(raw), tracker.duration_ms, status=fetch_outcome.status)

        if not raw:
            result = RunResult(
                status=STATUS_NO_NEW_ARTICLES,
                daily_processed=processed,
                daily_limit=self.daily_limit,
                fetch_status=fetch_outcome.status,
            )
            result.fallback_count, result.fallback_source = await self._surface_recent()
            result.used_fallback = result.fallback_count > 0
            return result

        result = RunResult(
            status=STATUS_SUCCESS,
            raw_count=len(raw),
            daily_processed=processed,
            daily_limit=self.daily_limit,
            fetch_status=fetch_outcome.status,
        )

        # Classify
        try:
            with PerformanceTracker("classify", self.logger) as tracker:
                classified = await self.classifier.classify(raw)
            enriched: List[EnrichedArticle] = classified.unwrap()
        except Exception as e:
            return await self._fail(e, "classify", result)
        result.classifier_mode = "ai" if classified.is_ok else f"heuristic ({classified.reason})"
        log_pipeline_metrics(self.logger, "classify", len(raw), len(enriched), tracker.duration_ms,
                             mode=result.classifier_mode)

        remaining = self.daily_limit - processed
        if len(enriched) > remaining:
            self.logger.info(f"Capping {len(enriched)} articles to remaining daily quota {remaining}")
            enriched = enriched[:remaining]

        if not enriched:
            # Keep the current latest-news summary rather than blanking it
            self.logger.info(f"No good news among {len(raw)} fetched articles, nothing to store")
            return result

        # Store
        try:
            with PerformanceTracker("store", self.logger):
                batch = await self.article_store.upsert_batch(raw, enriched)
        except Exception as e:
            return await self._fail(e, "store", result)
        result.batch_id = batch.batch_id
        result.filtered_count = batch.stored_count

        # UpdateQuota
        try:
            await self.counter.add(batch.stored_count)
            result.daily_processed = processed + batch.stored_count
        except Exception as e:
            # Articles are committed; a missed counter bump only loosens the quota
            self.error_handler.handle_error(e, "store", "update_quota")
            result.daily_processed = processed

        self.logger.info(
            f"✅ Ingestion complete: {result.raw_count} raw → {result.filtered_count} stored "
            f"({result.daily_processed}/{self.daily_limit} today)"
        )
        return result

    async def _surface_recent(self) -> Tuple[int, Optional[str]]:
        """
        Best effort: republish stored articles. Never raises.

        Tries the active articles of the newest batch first, then the most
        recent active articles of any batch. Returns (count, source).
        """
        try:
            source = FALLBACK_LATEST_BATCH
            candidates = await self.article_store.articles_from_latest_batch(self.settings.fallback_recent_count)
            if not candidates:
                source = FALLBACK_RECENT
                candidates = await self.article_store.recent_active(self.settings.fallback_recent_count)
            if not candidates:
                self.logger.warning("No fetched articles and no stored articles to fall back on")
                return 0, None
            selected = candidates[:self.settings.fallback_publish_count]
            await self.article_store.write_fallback_latest(selected)
            self.logger.info(f"Fetched nothing, re-surfaced {len(selected)} stored articles ({source})")
            return len(selected), source
        except Exception as e:
            self.error_handler.handle_error(e, "store", "fallback_content")
            return 0, None

    async def _fail(self, error: Exception, stage: str, result: RunResult) -> RunResult:
        context = self.error_handler.handle_error(error, "scheduler", stage, {"instance_id": self.instance_id})
        result.status = STATUS_ERROR
        result.error = f"{stage}: {str(error)[:200]}"
        try:
            await self.store.set(
                EXECUTION_ERRORS,
                f"{int(time.time() * 1000)}_{self.instance_id}",
                context.to_document(),
            )
        except Exception as e:
            self.logger.error(f"Could not persist execution error: {e}")
        return result

    async def _log_execution(self, result: RunResult) -> None:
        try:
            record = asdict(result)
            record["timestamp"] = time.time()
            record["instanceId"] = self.instance_id
            await self.store.set(EXECUTION_LOGS, f"{int(record['timestamp'] * 1000)}_{self.instance_id}", record)
        except Exception as e:
            self.logger.warning(f"Could not write execution log: {e}")

    # Timer

    async def run_with_timeout(self) -> RunResult:
        try:
            return await asyncio.wait_for(self.run_once(), timeout=self.settings.max_run_seconds)
        except asyncio.TimeoutError as e:
            self.logger.error(f"Ingestion run exceeded {self.settings.max_run_seconds}s and was cancelled")
            result = RunResult(status=STATUS_ERROR, daily_limit=self.daily_limit, error="timeout")
            self.error_handler.handle_error(e, "scheduler", "run_timeout")
            self.last_result = result
            return result

    async def _loop(self) -> None:
        interval = self.settings.interval_minutes * 60
        while not self.shutdown_event.is_set():
            await self.run_with_timeout()
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is None or self._task.done():
            self.shutdown_event.clear()
            self._task = asyncio.get_running_loop().create_task(self._loop())
            self.logger.info(f"Ingestion scheduled every {self.settings.interval_minutes:.0f} minutes")

    async def stop(self) -> None:
        self.shutdown_event.set()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
