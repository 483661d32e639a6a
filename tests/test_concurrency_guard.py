from goodnews.services.concurrency_guard import ConcurrencyGuard


def test_anonymous_callers_are_not_tracked(clock):
    guard = ConcurrencyGuard(max_concurrent=1, clock=clock)
    assert all(guard.admit(None, "healthCheck") for _ in range(5))
    assert guard.stats()["tracked_callers"] == 0


def test_denies_over_limit_then_admits_after_window(clock):
    guard = ConcurrencyGuard(max_concurrent=3, window_seconds=30, clock=clock)
    assert [guard.admit("u1", "trackView") for _ in range(3)] == [True, True, True]
    assert guard.admit("u1", "trackView") is False
    assert guard.stats()["denied"] == 1

    clock.advance(31)
    assert guard.admit("u1", "trackView") is True


def test_callers_are_independent(clock):
    guard = ConcurrencyGuard(max_concurrent=1, clock=clock)
    assert guard.admit("u1")
    assert guard.admit("u2")
    assert not guard.admit("u1")


def test_sweep_drops_idle_callers(clock):
    guard = ConcurrencyGuard(max_concurrent=2, window_seconds=30, clock=clock)
    guard.admit("u1")
    clock.advance(20)
    guard.admit("u2")
    clock.advance(15)
    assert guard.sweep() == 1
    assert list(guard.requests) == ["u2"]


def test_fails_open_on_internal_error():
    def broken_clock():
        raise RuntimeError("boom")

    guard = ConcurrencyGuard(max_concurrent=1, clock=broken_clock)
    assert guard.admit("u1") is True


async def test_sweep_task_lifecycle():
    guard = ConcurrencyGuard(sweep_interval_seconds=60)
    guard.start()
    assert guard.running
    await guard.stop()
    assert not guard.running
