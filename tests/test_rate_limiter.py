from goodnews.services.rate_limiter import RateLimiter, RateLimiterRegistry


def test_calls_within_limit_are_admitted(clock):
    limiter = RateLimiter("newsdata", calls_per_minute=3, clock=clock)
    for _ in range(3):
        assert limiter.admit() == 0
        limiter.record()
        clock.advance(1)


def test_call_over_limit_waits_until_oldest_ages_out(clock):
    limiter = RateLimiter("newsdata", calls_per_minute=3, clock=clock)
    first_call = clock()
    for _ in range(3):
        limiter.record()
        clock.advance(1)
    clock.advance(7)

    wait_ms = limiter.admit()
    until_oldest_expires_ms = (first_call + 60 - clock()) * 1000
    assert wait_ms > 0
    assert wait_ms >= until_oldest_expires_ms


def test_window_rolls_over(clock):
    limiter = RateLimiter("newsdata", calls_per_minute=2, clock=clock)
    limiter.record()
    limiter.record()
    assert limiter.admit() > 0
    clock.advance(70)
    assert limiter.admit() == 0


def test_call_history_stays_bounded(clock):
    limiter = RateLimiter("gemini", calls_per_minute=2, clock=clock)
    for _ in range(25):
        limiter.record()
    assert len(limiter.calls) <= 20


def test_limiter_disables_itself_after_repeated_errors():
    def broken_clock():
        raise RuntimeError("clock unavailable")

    limiter = RateLimiter("gnews", calls_per_minute=1, max_errors=3, clock=broken_clock)
    for _ in range(3):
        assert limiter.admit() == 0
    assert limiter.disabled
    limiter.reset()
    assert not limiter.disabled


async def test_registry_acquire_sleeps_for_wait(clock, no_sleep):
    registry = RateLimiterRegistry({"newsdata": 1}, clock=clock, sleep=no_sleep)
    assert await registry.acquire("newsdata") == 0
    waited = await registry.acquire("newsdata")
    assert waited > 0
    assert no_sleep.calls == [waited / 1000]
    assert registry.stats()["newsdata"]["calls_in_window"] == 2


async def test_registry_ignores_unknown_services(no_sleep):
    registry = RateLimiterRegistry({}, sleep=no_sleep)
    assert await registry.acquire("unknown") == 0
    assert registry.admit("unknown") == 0
    assert no_sleep.calls == []
