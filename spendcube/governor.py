"""Rate and concurrency governance for upstream text-generation calls.

Two independent controls:
  - RateLimiter: pyrate-limiter window shared by every item operation of a process
  - BatchConfig + plan_waves: chunk/wave layout the batch executor follows
    (``max_concurrency`` chunks in flight, ``batch_size`` items per chunk)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from pyrate_limiter import Limiter, Rate

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BatchConfig:
    batch_size: int
    max_concurrency: int
    inter_batch_delay_ms: int = 0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.inter_batch_delay_ms < 0:
            raise ValueError("inter_batch_delay_ms must be >= 0")

    @property
    def in_flight_ceiling(self) -> int:
        return self.batch_size * self.max_concurrency


BATCH_CONFIGS: dict[str, BatchConfig] = {
    "classification": BatchConfig(batch_size=10, max_concurrency=3, inter_batch_delay_ms=100),
    "qa": BatchConfig(batch_size=5, max_concurrency=2, inter_batch_delay_ms=200),
    "enrichment": BatchConfig(batch_size=20, max_concurrency=5, inter_batch_delay_ms=50),
}


def plan_waves(item_count: int, config: BatchConfig) -> list[list[range]]:
    """Return waves of chunks as index ranges into the item list.

    Wave N+1 is only submitted once wave N has finished, so a wave never
    holds more than ``max_concurrency`` chunks.
    """
    chunks = [
        range(start, min(start + config.batch_size, item_count))
        for start in range(0, item_count, config.batch_size)
    ]
    return [chunks[i : i + config.max_concurrency] for i in range(0, len(chunks), config.max_concurrency)]


class RateLimiter:
    """``max_tokens`` calls per window, refilled at ``refill_rate`` calls per second.

    The window is ``max_tokens / refill_rate`` seconds, so a full burst is
    allowed up front and the long-run rate stays at ``refill_rate``.
    """

    def __init__(
        self,
        *,
        max_tokens: int,
        refill_rate: float,
        name: str = "upstream",
        sleep: SleepFn = asyncio.sleep,
        poll_interval_s: float = 0.025,
    ) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.max_tokens = int(max_tokens)
        self.refill_rate = float(refill_rate)
        self.name = name
        self.window_ms = max(1, round(self.max_tokens / self.refill_rate * 1000))
        self.poll_interval_s = min(float(poll_interval_s), 1.0 / self.refill_rate)
        self._sleep = sleep
        # raise_when_fail=False and no max_delay: try_acquire answers immediately with a bool
        self._limiter = Limiter(Rate(self.max_tokens, self.window_ms), raise_when_fail=False, max_delay=None)
        self._lock = asyncio.Lock()

    def try_acquire(self) -> bool:
        return bool(self._limiter.try_acquire(self.name, 1))

    async def acquire(self) -> float:
        """Take one slot, polling until the window frees one.

        Returns the number of seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while not self.try_acquire():
                await self._sleep(self.poll_interval_s)
                waited += self.poll_interval_s
        if waited:
            logger.debug("rate limiter %s waited %.3fs", self.name, waited)
        return waited
