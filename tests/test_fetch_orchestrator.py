import pytest

from goodnews.services.fetch_orchestrator import PARALLEL, PRIORITY, FetchOrchestrator, dedupe_articles
from goodnews.services.rate_limiter import RateLimiterRegistry
from goodnews.services.retry import RetryExecutor
from goodnews.utils.error_monitoring import CircuitBreaker
from goodnews.utils.errors import ConfigError, ProviderError

from conftest import FakeProvider, make_raw, make_raws


def orchestrator(providers, no_sleep, strategy=PRIORITY, min_articles=40, breaker=None):
    return FetchOrchestrator(
        providers,
        RateLimiterRegistry({"primary": 100, "fallback": 100}, sleep=no_sleep),
        RetryExecutor(sleep=no_sleep),
        strategy=strategy,
        min_articles=min_articles,
        max_attempts=2,
        initial_delay_ms=10,
        circuit_breaker=breaker,
    )


async def test_fallback_not_invoked_when_primary_meets_threshold(no_sleep):
    primary = FakeProvider("primary", 1, make_raws(45, "https://primary.test"))
    fallback = FakeProvider("fallback", 2, make_raws(5, "https://fallback.test"))
    orch = orchestrator([fallback, primary], no_sleep)

    outcome = await orch.fetch_with_outcome()

    assert outcome.is_ok
    assert len(outcome.data) == 45
    assert fallback.calls == []
    assert orch.last_run.providers["fallback"].skipped == "threshold_met"
    assert orch.last_run.estimated_credits == 1


async def test_fallback_fills_in_below_threshold(no_sleep):
    primary = FakeProvider("primary", 1, make_raws(10, "https://primary.test"))
    fallback = FakeProvider("fallback", 2, make_raws(5, "https://fallback.test"))

    articles = await orchestrator([primary, fallback], no_sleep).fetch_all()

    assert len(articles) == 15
    assert fallback.calls == ["technology"]


async def test_links_are_deduplicated_case_insensitively(no_sleep):
    primary = FakeProvider("primary", 1, [make_raw("Volunteers clean the beach today", "https://x.test/Story")])
    fallback = FakeProvider("fallback", 2, [make_raw("Volunteers clean the beach again", "https://X.TEST/story")])

    articles = await orchestrator([primary, fallback], no_sleep).fetch_all()

    assert len(articles) == 1
    assert articles[0].title == "Volunteers clean the beach today"


def test_dedupe_keeps_first_occurrence():
    first = make_raw("First headline about a rescue", "https://a.test/1")
    dup = make_raw("Duplicate headline about rescue", " HTTPS://A.TEST/1 ")
    assert dedupe_articles([first, dup]) == [first]


async def test_parallel_failure_is_isolated(no_sleep):
    healthy = FakeProvider("primary", 1, make_raws(3, "https://ok.test"))
    broken = FakeProvider("fallback", 2, error=ProviderError("fallback", status=500))

    outcome = await orchestrator([healthy, broken], no_sleep, strategy=PARALLEL).fetch_with_outcome()

    assert outcome.is_degraded
    assert len(outcome.data) == 3
    assert len(broken.calls) == 2
    assert outcome.reason.startswith("1 provider request")


async def test_total_failure_is_failed_outcome_and_empty_list(no_sleep):
    a = FakeProvider("primary", 1, error=ProviderError("primary"))
    b = FakeProvider("fallback", 2, error=ProviderError("fallback"))
    orch = orchestrator([a, b], no_sleep)

    outcome = await orch.fetch_with_outcome()
    assert outcome.is_failed
    assert await orch.fetch_all() == []


async def test_priority_override_is_rolled_back(no_sleep):
    primary = FakeProvider("primary", 1, make_raws(45, "https://primary.test"))
    fallback = FakeProvider("fallback", 2, make_raws(45, "https://fallback.test"))
    orch = orchestrator([primary, fallback], no_sleep)

    articles = await orch.fetch_all(priority_override={"fallback": 0})

    assert articles[0].link.startswith("https://fallback.test")
    assert primary.calls == []
    assert (primary.priority, fallback.priority) == (1, 2)


async def test_priority_override_restored_on_error(no_sleep):
    primary = FakeProvider("primary", 1)
    orch = orchestrator([primary], no_sleep)
    with pytest.raises(RuntimeError):
        async with orch.priority_override({"primary": 9}):
            assert primary.priority == 9
            raise RuntimeError("boom")
    assert primary.priority == 1


async def test_open_circuit_skips_provider(no_sleep):
    breaker = CircuitBreaker(failure_threshold=1)
    broken = FakeProvider("primary", 1, error=ProviderError("primary"))
    fallback = FakeProvider("fallback", 2, make_raws(2, "https://fallback.test"))
    orch = orchestrator([broken, fallback], no_sleep, breaker=breaker)

    await orch.fetch_all()
    calls_after_first_run = len(broken.calls)
    articles = await orch.fetch_all()

    assert len(broken.calls) == calls_after_first_run
    assert orch.last_run.providers["primary"].skipped == "circuit_open"
    assert len(articles) == 2


async def test_missing_credentials_do_not_trip_circuit(no_sleep):
    breaker = CircuitBreaker(failure_threshold=1)
    unconfigured = FakeProvider("primary", 1, error=ConfigError("primary API key not configured"))
    orch = orchestrator([unconfigured], no_sleep, breaker=breaker)

    await orch.fetch_all()

    assert breaker.should_attempt("primary")
    assert len(unconfigured.calls) == 1
