"""
Per-caller admission control for caller-facing operations.

Every admitted request leaves a timestamp; a caller with ``max_concurrent``
timestamps inside the trailing window is denied. Anonymous callers are never
tracked. The guard fails open on its own faults.

Lifecycle: ``start()`` launches a periodic sweep task that prunes expired
timestamps and empty callers; ``stop()`` cancels it.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional


class ConcurrencyGuard:

    def __init__(
        self,
        max_concurrent: int = 5,
        window_seconds: float = 30.0,
        sweep_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_concurrent = max_concurrent
        self.window_seconds = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.clock = clock
        self.requests: Dict[str, List[float]] = {}
        self.denied_count = 0
        self._sweep_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    def admit(self, caller_id: Optional[str], operation_name: str = "") -> bool:
        if not caller_id:
            return True
        try:
            now = self.clock()
            cutoff = now - self.window_seconds
            active = [t for t in self.requests.get(caller_id, []) if t > cutoff]

            if len(active) >= self.max_concurrent:
                self.requests[caller_id] = active
                self.denied_count += 1
                self.logger.warning(
                    f"Concurrent request limit exceeded for {caller_id} on {operation_name}: "
                    f"{len(active)}/{self.max_concurrent}"
                )
                return False

            active.append(now)
            if len(active) > self.max_concurrent * 10:
                active = active[-self.max_concurrent * 2:]
            self.requests[caller_id] = active
            return True
        except Exception as e:
            self.logger.error(f"Concurrency guard error for {caller_id}: {e}")
            return True

    def sweep(self) -> int:
        """Drop expired timestamps and callers with nothing left. Returns callers removed."""
        cutoff = self.clock() - self.window_seconds
        removed = 0
        for caller_id in list(self.requests):
            active = [t for t in self.requests[caller_id] if t > cutoff]
            if active:
                self.requests[caller_id] = active
            else:
                del self.requests[caller_id]
                removed += 1
        if removed:
            self.logger.debug(f"Concurrency sweep removed {removed} idle callers")
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                self.logger.error(f"Concurrency sweep failed: {e}")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def stats(self) -> Dict[str, int]:
        return {
            "tracked_callers": len(self.requests),
            "active_requests": sum(len(v) for v in self.requests.values()),
            "denied": self.denied_count,
        }
