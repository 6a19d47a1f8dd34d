"""Per-sender message cap using a sliding window."""

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict

from chat_core.errors import RateLimited
from chat_core.logging_config import get_logger

logger = get_logger(__name__)


class SenderRateLimiter:
    """Allows at most `rate_limit` messages per sender in any `time_window` seconds."""

    def __init__(
        self,
        rate_limit: int,
        time_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_limit = rate_limit
        self.time_window = time_window
        self._clock = clock
        self._sent: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()
        self._lock = asyncio.Lock()

    async def acquire(self, sender_id: str) -> None:
        """Record one message for the sender or raise RateLimited."""
        async with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self.time_window:
                self._sweep(now)
            window = self._trim(sender_id, now)

            if len(window) >= self.rate_limit:
                retry_after = max(0.0, window[0] + self.time_window - now)
                logger.warning(
                    "rate_limit_exceeded",
                    sender_id=sender_id,
                    rate_limit=self.rate_limit,
                    retry_after=round(retry_after, 3),
                )
                raise RateLimited(
                    f"Rate limit of {self.rate_limit} messages per "
                    f"{self.time_window:g} seconds exceeded",
                    retry_after=retry_after,
                )
            window.append(now)
            self._sent[sender_id] = window

    async def remaining(self, sender_id: str) -> int:
        async with self._lock:
            now = self._clock()
            window = self._sent.get(sender_id, deque())
            live = sum(1 for ts in window if now - ts < self.time_window)
            return max(0, self.rate_limit - live)

    def _trim(self, sender_id: str, now: float) -> Deque[float]:
        window = self._sent.pop(sender_id, None) or deque()
        while window and now - window[0] >= self.time_window:
            window.popleft()
        if window:
            self._sent[sender_id] = window
        return window

    def _sweep(self, now: float) -> None:
        """Forget senders with nothing left in their window."""
        for sender_id in list(self._sent):
            self._trim(sender_id, now)
        self._last_sweep = now
