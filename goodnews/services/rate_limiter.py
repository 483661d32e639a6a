"""
Per-service sliding-window rate limiting.

Each limiter keeps the call timestamps of the trailing minute (plus a small
clock-skew buffer). It fails open: after repeated internal
errors it disables itself rather than blocking traffic.

State is per process. Several running instances each enforce their own
window; no cross-instance coordination is attempted.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional


MIN_WAIT_MS = 100
WAIT_PADDING_MS = 100


class RateLimiter:
    """Sliding one-minute window for a single service."""

    def __init__(
        self,
        service: str,
        calls_per_minute: int,
        window_seconds: float = 60.0,
        skew_buffer_seconds: float = 5.0,
        max_errors: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.calls_per_minute = calls_per_minute
        self.window_ms = window_seconds * 1000
        self.skew_buffer_ms = skew_buffer_seconds * 1000
        self.max_errors = max_errors
        self.clock = clock
        self.calls: List[float] = []
        self.error_count = 0
        self.disabled = False
        self.logger = logging.getLogger(__name__)

    def _now_ms(self) -> float:
        return self.clock() * 1000

    def admit(self) -> int:
        """Milliseconds the caller must wait before making the next call."""
        if self.disabled:
            return 0
        try:
            now = self._now_ms()
            horizon = now - self.window_ms - self.skew_buffer_ms
            self.calls = [t for t in self.calls if t > horizon]

            if len(self.calls) >= self.calls_per_minute:
                oldest = min(self.calls)
                wait = max(MIN_WAIT_MS, self.window_ms - (now - oldest) + WAIT_PADDING_MS)
                self.logger.info(f"Rate limit reached for {self.service}, waiting {wait / 1000:.1f}s")
                return int(wait)
            return 0
        except Exception as e:
            self._record_error(e)
            return 0

    def record(self) -> None:
        """Register a call that is about to be made."""
        if self.disabled:
            return
        try:
            self.calls.append(self._now_ms())
            if len(self.calls) > self.calls_per_minute * 10:
                self.calls = self.calls[-self.calls_per_minute * 2:]
            self.error_count = 0
        except Exception as e:
            self._record_error(e)

    def _record_error(self, error: Exception) -> None:
        self.error_count += 1
        self.logger.error(f"Rate limiter error for {self.service}: {error}")
        if self.error_count >= self.max_errors:
            self.disabled = True
            self.logger.warning(f"Rate limiter for {self.service} disabled after {self.error_count} errors")

    def reset(self) -> None:
        self.calls = []
        self.error_count = 0
        self.disabled = False

    def stats(self) -> Dict[str, int]:
        now = self._now_ms()
        in_window = [t for t in self.calls if t > now - self.window_ms]
        return {
            "calls_in_window": len(in_window),
            "limit": self.calls_per_minute,
            "disabled": int(self.disabled),
        }


class RateLimiterRegistry:
    """One limiter per configured service, created at startup."""

    def __init__(
        self,
        limits: Dict[str, int],
        window_seconds: float = 60.0,
        skew_buffer_seconds: float = 5.0,
        max_errors: int = 5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sleep = sleep
        self.limiters: Dict[str, RateLimiter] = {
            service: RateLimiter(
                service,
                calls_per_minute,
                window_seconds=window_seconds,
                skew_buffer_seconds=skew_buffer_seconds,
                max_errors=max_errors,
                clock=clock,
            )
            for service, calls_per_minute in limits.items()
        }
        self.logger = logging.getLogger(__name__)

    def get(self, service: str) -> Optional[RateLimiter]:
        return self.limiters.get(service)

    def admit(self, service: str) -> int:
        limiter = self.limiters.get(service)
        return limiter.admit() if limiter else 0

    async def acquire(self, service: str) -> int:
        """Wait for a slot on ``service`` and register the call. Returns the wait applied."""
        limiter = self.limiters.get(service)
        if limiter is None:
            return 0
        wait_ms = limiter.admit()
        if wait_ms > 0:
            await self.sleep(wait_ms / 1000)
        limiter.record()
        return wait_ms

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {service: limiter.stats() for service, limiter in self.limiters.items()}
