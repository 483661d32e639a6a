"""
Multi-provider article acquisition.

Two strategies:

- ``parallel``: every enabled provider is queried for every one of its
  categories at once; a failing category simply contributes nothing.
- ``priority``: providers are tried in ascending priority order and the
  remaining ones are skipped as soon as the running total reaches
  ``min_articles``.

Whatever was fetched is concatenated and deduplicated by link
(case-insensitive, first occurrence wins). The orchestrator never raises
to its caller: total failure yields an empty list (or a failed Outcome).
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from goodnews.models.article import RawArticle
from goodnews.models.results import Outcome
from goodnews.services.news_providers import ProviderFetcher
from goodnews.services.rate_limiter import RateLimiterRegistry
from goodnews.services.retry import RetryExecutor
from goodnews.utils.error_monitoring import CircuitBreaker
from goodnews.utils.errors import ConfigError, ProviderError
from goodnews.utils.hashing import normalize_link


PARALLEL = "parallel"
PRIORITY = "priority"


@dataclass
class ProviderRunStats:
    name: str
    priority: int
    articles: int = 0
    requests: int = 0
    successes: int = 0
    failures: List[str] = field(default_factory=list)
    skipped: Optional[str] = None


@dataclass
class FetchRunReport:
    """
    What happened during one fetch.

    ``estimated_credits`` counts one credit per outgoing request. Providers
    bill differently (retries, page sizes), so this is an estimate and not
    quota bookkeeping.
    """
    strategy: str
    providers: Dict[str, ProviderRunStats] = field(default_factory=dict)
    raw_count: int = 0
    unique_count: int = 0
    duration_ms: float = 0.0

    @property
    def estimated_credits(self) -> int:
        return sum(stats.requests for stats in self.providers.values())

    @property
    def failure_count(self) -> int:
        return sum(len(stats.failures) for stats in self.providers.values())


def dedupe_articles(articles: List[RawArticle]) -> List[RawArticle]:
    """Keep the first article for each case-insensitive link."""
    seen = set()
    unique = []
    for article in articles:
        key = normalize_link(article.link)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(article)
    return unique


class FetchOrchestrator:

    def __init__(
        self,
        providers: List[ProviderFetcher],
        rate_limiters: RateLimiterRegistry,
        retry: RetryExecutor,
        strategy: str = PRIORITY,
        min_articles: int = 40,
        max_attempts: int = 2,
        initial_delay_ms: float = 2000,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.providers = providers
        self.rate_limiters = rate_limiters
        self.retry = retry
        self.strategy = strategy
        self.min_articles = min_articles
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.last_run: Optional[FetchRunReport] = None
        self.logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def priority_override(self, priorities: Optional[Dict[str, int]] = None):
        """Temporarily reassign provider priorities; always restored on exit."""
        original = {provider.name: provider.priority for provider in self.providers}
        try:
            for provider in self.providers:
                if priorities and provider.name in priorities:
                    provider.priority = priorities[provider.name]
            yield
        finally:
            for provider in self.providers:
                provider.priority = original[provider.name]

    async def fetch_all(self, priority_override: Optional[Dict[str, int]] = None) -> List[RawArticle]:
        outcome = await self.fetch_with_outcome(priority_override)
        return outcome.unwrap_or([])

    async def fetch_with_outcome(self, priority_override: Optional[Dict[str, int]] = None) -> Outcome:
        start = time.monotonic()
        report = FetchRunReport(strategy=self.strategy)
        self.last_run = report

        try:
            async with self.priority_override(priority_override):
                if self.strategy == PARALLEL:
                    articles = await self._fetch_parallel(report)
                else:
                    articles = await self._fetch_by_priority(report)
        except Exception as e:
            self.logger.error(f"❌ Fetch orchestration failed: {e}", exc_info=True)
            return Outcome.failed(e)
        finally:
            report.duration_ms = (time.monotonic() - start) * 1000

        unique = dedupe_articles(articles)
        report.raw_count = len(articles)
        report.unique_count = len(unique)
        self.logger.info(
            f"Fetched {len(articles)} articles ({len(unique)} unique) via {self.strategy} strategy, "
            f"~{report.estimated_credits} credits"
        )

        attempted = [s for s in report.providers.values() if s.skipped is None]
        succeeded = [s for s in attempted if s.successes]
        if report.failure_count == 0:
            return Outcome.ok(unique)
        if not succeeded and not unique:
            failures = "; ".join(f for s in report.providers.values() for f in s.failures)
            return Outcome.failed(ProviderError("all", status=503, message=f"All providers failed: {failures}"))
        return Outcome.degraded(unique, f"{report.failure_count} provider request(s) failed")

    def _ordered_providers(self) -> List[ProviderFetcher]:
        return sorted((p for p in self.providers if p.enabled), key=lambda p: p.priority)

    async def _fetch_parallel(self, report: FetchRunReport) -> List[RawArticle]:
        providers = [p for p in self._ordered_providers() if self._admit_provider(p, report)]
        results = await asyncio.gather(*(self._fetch_provider(p, report) for p in providers))
        return [article for batch in results for article in batch]

    async def _fetch_by_priority(self, report: FetchRunReport) -> List[RawArticle]:
        collected: List[RawArticle] = []
        providers = self._ordered_providers()
        for index, provider in enumerate(providers):
            if not self._admit_provider(provider, report):
                continue
            collected.extend(await self._fetch_provider(provider, report))
            if len(collected) >= self.min_articles:
                for skipped in providers[index + 1:]:
                    report.providers[skipped.name] = ProviderRunStats(
                        skipped.name, skipped.priority, skipped="threshold_met"
                    )
                if providers[index + 1:]:
                    self.logger.info(
                        f"{len(collected)} articles >= threshold {self.min_articles}, "
                        f"skipping {len(providers) - index - 1} lower-priority provider(s)"
                    )
                break
        return collected

    def _admit_provider(self, provider: ProviderFetcher, report: FetchRunReport) -> bool:
        if self.circuit_breaker.should_attempt(provider.name):
            return True
        self.logger.warning(f"Circuit open for {provider.name}, skipping this run")
        report.providers[provider.name] = ProviderRunStats(provider.name, provider.priority, skipped="circuit_open")
        return False

    async def _fetch_provider(self, provider: ProviderFetcher, report: FetchRunReport) -> List[RawArticle]:
        stats = report.providers.setdefault(provider.name, ProviderRunStats(provider.name, provider.priority))
        results = await asyncio.gather(
            *(self._fetch_category(provider, category, stats) for category in provider.categories)
        )
        articles = [article for batch in results for article in batch]
        stats.articles = len(articles)
        return articles

    async def _fetch_category(
        self, provider: ProviderFetcher, category: str, stats: ProviderRunStats
    ) -> List[RawArticle]:
        requests_before = provider.request_count

        async def attempt() -> List[RawArticle]:
            await self.rate_limiters.acquire(provider.name)
            return await provider.fetch_category(category)

        try:
            articles = await self.retry.run(
                attempt,
                max_attempts=self.max_attempts,
                initial_delay_ms=self.initial_delay_ms,
                operation_name=f"{provider.name}:{category}",
            )
        except ConfigError as e:
            stats.requests += provider.request_count - requests_before
            stats.failures.append(f"{category}: {e}")
            self.logger.warning(f"{provider.name} not configured: {e}")
            return []
        except Exception as e:
            stats.requests += max(1, provider.request_count - requests_before)
            stats.failures.append(f"{category}: {e}")
            self.circuit_breaker.record_failure(provider.name)
            self.logger.warning(f"{provider.name} failed for '{category}': {e}")
            return []

        stats.requests += provider.request_count - requests_before
        stats.successes += 1
        self.circuit_breaker.record_success(provider.name)
        return articles

    async def close(self) -> None:
        for provider in self.providers:
            await provider.close()

    def get_status(self) -> Dict[str, object]:
        return {
            "strategy": self.strategy,
            "min_articles": self.min_articles,
            "providers": [
                {"name": p.name, "priority": p.priority, "enabled": p.enabled} for p in self.providers
            ],
            "circuits": self.circuit_breaker.states(),
        }
