import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from goodnews.utils.errors import NON_RETRYABLE_ERRORS, RateLimitError


class RetryExecutor:
    """
    Exponential backoff with jitter for a fallible async operation.

    The delay doubles after every failed attempt and gets up to 10% random
    jitter on top. Rate-limit errors and non-retryable errors are re-raised
    immediately; the last error is always re-raised once attempts run out.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self.sleep = sleep
        self.jitter = jitter
        self.logger = logging.getLogger(__name__)

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        max_attempts: int = 3,
        initial_delay_ms: float = 1000,
        operation_name: Optional[str] = None,
    ) -> Any:
        name = operation_name or getattr(operation, "__name__", "operation")
        attempts = max(1, max_attempts)
        delay_ms = float(initial_delay_ms)

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except RateLimitError as e:
                self.logger.warning(f"{name}: rate limited, not retrying (retry after {e.retry_after}s)")
                raise
            except NON_RETRYABLE_ERRORS as e:
                self.logger.warning(f"{name}: non-retryable {type(e).__name__}: {e}")
                raise
            except Exception as e:
                if attempt >= attempts:
                    self.logger.error(f"{name}: failed after {attempts} attempts: {e}")
                    raise
                wait_ms = delay_ms + delay_ms * 0.1 * self.jitter()
                self.logger.warning(
                    f"{name}: attempt {attempt}/{attempts} failed ({e}), retrying in {wait_ms:.0f}ms"
                )
                await self.sleep(wait_ms / 1000)
                delay_ms *= 2
