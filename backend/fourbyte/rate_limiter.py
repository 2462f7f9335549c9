from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .runtime_constants import RATE_LIMIT_SWEEP_INTERVAL_MS
from .runtime_types import RateLimitEntry, RateLimitResult
from .runtime_utils import now_ms

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window request counter keyed by connection id.

    A window opens on the first request (or the first request after the
    previous window expired) and admits ``max_requests`` calls. Because the
    window is fixed rather than sliding, a client can get up to
    ``2 * max_requests`` calls through around a window boundary; that burst
    is accepted behavior.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        *,
        name: str = "default",
        clock: Callable[[], int] = now_ms,
        sweep_interval_ms: int = RATE_LIMIT_SWEEP_INTERVAL_MS,
    ) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window_ms = max(1, int(window_ms))
        self.name = name
        self._clock = clock
        self._sweep_interval_ms = max(1, int(sweep_interval_ms))
        self._entries: dict[str, RateLimitEntry] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def check(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        entry = self._entries.get(identifier)
        if entry is None or now - entry.window_start >= self.window_ms:
            entry = RateLimitEntry(window_start=now)
            self._entries[identifier] = entry

        reset_in = self.window_ms - (now - entry.window_start)
        if entry.count < self.max_requests:
            entry.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests - entry.count,
                reset_in=reset_in,
            )

        return RateLimitResult(allowed=False, remaining=0, reset_in=reset_in)

    def remove(self, identifier: str) -> None:
        self._entries.pop(identifier, None)

    def cleanup(self) -> int:
        now = self._clock()
        stale_threshold = self.window_ms * 2
        stale = [
            identifier
            for identifier, entry in self._entries.items()
            if now - entry.window_start > stale_threshold
        ]
        for identifier in stale:
            del self._entries[identifier]
        if stale:
            logger.debug("rate limiter %s swept %d stale entries", self.name, len(stale))
        return len(stale)

    def start(self) -> None:
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name=f"ratelimit:{self.name}")

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_ms / 1000)
            self.cleanup()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        return {
            "trackedClients": len(self._entries),
            "maxRequests": self.max_requests,
            "windowMs": self.window_ms,
        }
