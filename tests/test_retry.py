import pytest

from goodnews.services.retry import RetryExecutor
from goodnews.utils.errors import ConfigError, ProviderError, RateLimitError, ValidationError


class Flaky:
    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


async def test_retries_with_exponential_backoff(no_sleep):
    retry = RetryExecutor(sleep=no_sleep, jitter=lambda: 0.0)
    operation = Flaky([ProviderError("newsdata"), ProviderError("newsdata")])

    assert await retry.run(operation, max_attempts=3, initial_delay_ms=1000) == "ok"
    assert operation.calls == 3
    assert no_sleep.calls == [1.0, 2.0]


async def test_jitter_adds_up_to_ten_percent(no_sleep):
    retry = RetryExecutor(sleep=no_sleep, jitter=lambda: 1.0)
    await retry.run(Flaky([ProviderError("gnews")]), max_attempts=2, initial_delay_ms=1000)
    assert no_sleep.calls == [pytest.approx(1.1)]


async def test_reraises_last_error_when_attempts_run_out(no_sleep):
    retry = RetryExecutor(sleep=no_sleep)
    last = ProviderError("newsdata", status=500, message="second")
    operation = Flaky([ProviderError("newsdata", message="first"), last])

    with pytest.raises(ProviderError) as excinfo:
        await retry.run(operation, max_attempts=2)
    assert excinfo.value is last


@pytest.mark.parametrize("error", [
    RateLimitError("gemini", retry_after=300),
    ConfigError("missing key"),
    ValidationError("bad input"),
])
async def test_does_not_retry_terminal_errors(no_sleep, error):
    retry = RetryExecutor(sleep=no_sleep)
    operation = Flaky([error, error])

    with pytest.raises(type(error)):
        await retry.run(operation, max_attempts=3)
    assert operation.calls == 1
    assert no_sleep.calls == []
