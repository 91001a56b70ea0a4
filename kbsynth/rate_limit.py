"""
Request and token budgets for the generation service.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)


class RateBudget:
    """
    Sliding-window requests-per-minute and tokens-per-minute accounting.

    ``acquire`` is awaited before each submission and blocks until both
    budgets have room, so throttling happens before a 429 rather than after.
    A single request larger than the token budget is let through once the
    window is empty.
    """

    def __init__(
        self,
        requests_per_minute: Optional[int] = None,
        tokens_per_minute: Optional[int] = None,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._usage: Deque[Tuple[float, int]] = deque()
        self._lock = asyncio.Lock()

    @property
    def unlimited(self) -> bool:
        return not self.requests_per_minute and not self.tokens_per_minute

    def _prune(self, now: float) -> None:
        while self._usage and now - self._usage[0][0] >= self.window:
            self._usage.popleft()

    def tokens_in_window(self) -> int:
        self._prune(self._clock())
        return sum(tokens for _, tokens in self._usage)

    def _has_room(self, tokens: int) -> bool:
        if self.requests_per_minute and len(self._usage) >= self.requests_per_minute:
            return False
        if self.tokens_per_minute and self._usage:
            used = sum(used_tokens for _, used_tokens in self._usage)
            if used + tokens > self.tokens_per_minute:
                return False
        return True

    async def acquire(self, tokens: int = 0) -> float:
        """
        Wait until a request costing `tokens` fits the budget, then record it.

        Returns:
            Total seconds spent waiting
        """
        if self.unlimited:
            return 0.0

        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if self._has_room(tokens):
                    self._usage.append((now, tokens))
                    return waited

                delay = max(0.0, self.window - (now - self._usage[0][0]))
                logger.info(
                    f"Rate budget exhausted ({len(self._usage)} requests, "
                    f"{sum(t for _, t in self._usage)} tokens in window). Waiting {delay:.2f}s"
                )
                await self._sleep(delay)
                waited += delay
