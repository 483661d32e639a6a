#!/usr/bin/env python3
import os
import sys
import asyncio
import json
import logging
import signal
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from goodnews.deployment.validator import DeploymentValidator
from goodnews.pipeline.api import GoodNewsAPI
from goodnews.pipeline.ingestion_scheduler import DailyCounter, IngestionScheduler
from goodnews.pipeline.retention_sweeper import RetentionSweeper
from goodnews.services.ai_service import AIService
from goodnews.services.article_store import ArticleStore
from goodnews.services.cache_service import TTLCache
from goodnews.services.concurrency_guard import ConcurrencyGuard
from goodnews.services.content_classifier import AIClassifier, ContentClassifier, KeywordClassifier
from goodnews.services.document_store import DocumentStore
from goodnews.services.engagement_tracker import EngagementTracker
from goodnews.services.fetch_orchestrator import FetchOrchestrator
from goodnews.services.news_providers import build_providers
from goodnews.services.rate_limiter import RateLimiterRegistry
from goodnews.services.retry import RetryExecutor
from goodnews.settings import Settings
from goodnews.utils.error_monitoring import CircuitBreaker, ErrorHandler
from goodnews.utils.logging_config import setup_logging


APP_CONFIG = "app_config"
RUNTIME_DOC = "runtime"


class GoodNewsApp:
    """
    Builds every component once from Settings and owns their lifecycle.

    ``initialize()`` opens the store, layers the ``app_config/runtime``
    document between defaults and environment, validates, then wires the
    pipeline. ``close()`` releases everything in reverse order.
    """

    def __init__(self, settings: Optional[Settings] = None, env: Optional[Mapping[str, str]] = None):
        self.env = os.environ if env is None else env
        # Pre-remote settings; only used to locate the store
        self.settings = settings or Settings.load(env=self.env, validate=False)
        self._explicit_settings = settings is not None
        self.logger = logging.getLogger(__name__)

        self.store: Optional[DocumentStore] = None
        self.cache: Optional[TTLCache] = None
        self.rate_limiters: Optional[RateLimiterRegistry] = None
        self.guard: Optional[ConcurrencyGuard] = None
        self.orchestrator: Optional[FetchOrchestrator] = None
        self.classifier: Optional[ContentClassifier] = None
        self.articles: Optional[ArticleStore] = None
        self.engagement: Optional[EngagementTracker] = None
        self.scheduler: Optional[IngestionScheduler] = None
        self.sweeper: Optional[RetentionSweeper] = None
        self.api: Optional[GoodNewsAPI] = None
        self.error_handler = ErrorHandler()

        self.shutdown_event = asyncio.Event()
        self._sweep_task: Optional[asyncio.Task] = None

    async def initialize(self) -> "GoodNewsApp":
        self.store = DocumentStore(self.settings.store.db_path)
        await self.store.initialize()

        if self._explicit_settings:
            self.settings.validate()
        else:
            remote = await self.store.get(APP_CONFIG, RUNTIME_DOC)
            if remote:
                self.logger.info(f"Loaded remote config sections: {', '.join(sorted(remote))}")
            self.settings = Settings.load(remote=remote, env=self.env)

        s = self.settings
        self.cache = TTLCache(self.store, s.cache.default_ttl)
        self.rate_limiters = RateLimiterRegistry(
            s.rate_limits.calls_per_minute,
            window_seconds=s.rate_limits.window_seconds,
            skew_buffer_seconds=s.rate_limits.skew_buffer_seconds,
            max_errors=s.rate_limits.max_errors,
        )
        retry = RetryExecutor()
        self.guard = ConcurrencyGuard(
            max_concurrent=s.security.max_concurrent_requests,
            window_seconds=s.security.window_seconds,
            sweep_interval_seconds=s.security.cleanup_interval_seconds,
        )

        providers = build_providers(s.enabled_providers(), s.fetch.provider_timeout_seconds)
        self.orchestrator = FetchOrchestrator(
            providers,
            self.rate_limiters,
            retry,
            strategy=s.fetch.strategy,
            min_articles=s.fetch.min_articles,
            max_attempts=s.fetch.max_attempts,
            initial_delay_ms=s.fetch.initial_delay_ms,
            circuit_breaker=CircuitBreaker(
                failure_threshold=s.fetch.breaker_failure_threshold,
                recovery_timeout=timedelta(seconds=s.fetch.breaker_recovery_seconds),
            ),
        )

        ai_classifier = None
        if s.has_ai:
            ai_service = AIService(
                api_key=s.ai.api_key,
                model=s.ai.model,
                prompts_path=s.ai.prompts_path,
                temperature=s.ai.temperature,
                max_output_tokens=s.ai.max_output_tokens,
                timeout_seconds=s.ai.timeout_seconds,
            )
            ai_classifier = AIClassifier(
                ai_service,
                retry,
                self.rate_limiters,
                max_attempts=s.ai.max_attempts,
                initial_delay_ms=s.limits.initial_retry_delay_ms,
            )
        else:
            self.logger.warning("GEMINI_API_KEY not set: classification will use the keyword heuristic")
        self.classifier = ContentClassifier(KeywordClassifier(), ai_classifier)

        self.articles = ArticleStore(self.store, self.cache, s)
        self.engagement = EngagementTracker(
            self.store,
            self.cache,
            s.weights,
            bookmark_limit=s.limits.bookmark_limit,
            lookup_chunk_size=s.store.lookup_chunk_size,
        )
        self.scheduler = IngestionScheduler(
            self.orchestrator,
            self.classifier,
            self.articles,
            DailyCounter(self.store),
            daily_limit=s.limits.daily_articles,
            settings=s.scheduler,
            error_handler=self.error_handler,
            instance_id=s.instance_id,
        )
        self.sweeper = RetentionSweeper(
            self.store,
            article_ttl_hours=s.store.article_ttl_hours,
            metadata_ttl_days=s.store.metadata_ttl_days,
            page_size=s.store.cleanup_batch_limit,
        )
        self.api = GoodNewsAPI(
            s, self.store, self.cache, self.articles, self.engagement, self.guard,
            scheduler=self.scheduler, rate_limiters=self.rate_limiters,
        )

        self.guard.start()
        self.logger.info(
            f"🚀 Good news backend v{s.version} ready (instance {s.instance_id}, "
            f"{len(providers)} provider(s), AI {'on' if ai_classifier else 'off'})"
        )
        return self

    async def close(self) -> None:
        self.shutdown_event.set()
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.guard is not None:
            await self.guard.stop()
        if self.orchestrator is not None:
            await self.orchestrator.close()
        if self.store is not None:
            await self.store.close()
        self.logger.info("Good news backend stopped")

    async def __aenter__(self) -> "GoodNewsApp":
        return await self.initialize()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _sweep_loop(self) -> None:
        interval = self.settings.scheduler.sweep_interval_minutes * 60
        while not self.shutdown_event.is_set():
            try:
                await self.sweeper.sweep_all()
            except Exception as e:
                self.error_handler.handle_error(e, "store", "retention_sweep")
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def _handle_shutdown(self) -> None:
        self.logger.info("Shutdown signal received")
        self.shutdown_event.set()

    async def serve(self) -> None:
        """Run scheduled ingestion and retention until a shutdown signal."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except (NotImplementedError, RuntimeError):
                pass

        self.scheduler.start()
        self._sweep_task = loop.create_task(self._sweep_loop())
        await self.shutdown_event.wait()


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


async def main(argv: Optional[list] = None) -> int:
    """Main entry point"""
    import argparse
    parser = argparse.ArgumentParser(description="Good news harvesting backend")
    parser.add_argument('--once', action='store_true', help='Run one ingestion immediately')
    parser.add_argument('--sweep', action='store_true', help='Delete expired articles, metadata and cache entries')
    parser.add_argument('--health', action='store_true', help='Health check only')
    parser.add_argument('--validate', action='store_true', help='Run deployment validation')
    parser.add_argument('--clear-cache', action='store_true', help='Clear all shared cache entries')
    parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation')
    parser.add_argument('--serve', action='store_true', help='Run the ingestion scheduler loop')
    args = parser.parse_args(argv)
    if not any((args.once, args.sweep, args.health, args.validate, args.clear_cache, args.serve)):
        parser.print_help()
        return 2

    load_dotenv()
    bootstrap = Settings.load(validate=False)
    setup_logging(
        log_level=bootstrap.logging.level,
        log_dir=bootstrap.logging.log_dir,
        enable_file_logging=bootstrap.logging.enable_file_logging,
        enable_structured_logging=bootstrap.logging.enable_structured_logging,
    )

    if args.validate:
        validator = DeploymentValidator(check_ai_connectivity=True)
        report = await validator.validate()
        validator.print_report(report)
        return 0 if report.ready_for_deployment else 1

    app = GoodNewsApp()
    try:
        await app.initialize()

        if args.health:
            health = await app.api.call("healthCheck")
            _print_json(health)
            return 0 if health.get("status") == "healthy" else 1
        if args.clear_cache:
            if not args.yes:
                print("🗑️  WARNING: This will clear ALL shared cache entries!")
                response = input("Are you sure? Type 'yes' to confirm: ")
                if response.lower() != 'yes':
                    print("❌ Cache clear cancelled")
                    return 1
            cleared = await app.cache.clear()
            print(f"✅ Cleared {cleared} cache entries")
            return 0
        if args.sweep:
            _print_json(await app.sweeper.sweep_all())
            return 0
        if args.once:
            result = await app.scheduler.run_with_timeout()
            _print_json(result.to_response())
            return 1 if result.status == "error" else 0

        if args.serve:
            print("Starting ingestion scheduler...")
            print(f"Will run every {app.settings.scheduler.interval_minutes:.0f} minutes")
            await app.serve()
        return 0
    except KeyboardInterrupt:
        print("\n⚠️ Shutting down gracefully...")
        return 0
    except Exception as e:  # noqa: BLE001
        print(f"❌ Fatal error: {e}")
        logging.exception("Fatal error in main")
        return 1
    finally:
        await app.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
