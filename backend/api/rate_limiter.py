"""In-process request rate limiting for API routes."""

import threading
import time
from typing import Callable, Hashable, Optional

from config import settings


class RateLimiter:
    """Fixed-window counter per bucket.

    Each bucket allows ``limit`` hits per ``period`` seconds. State is held
    in memory, so limits apply per process.
    """

    def __init__(
        self,
        limit: int,
        period: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.period = period
        self._clock = clock
        self._windows: dict[Hashable, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def check(self, bucket: Hashable) -> bool:
        """Count a hit against ``bucket``. Returns False once the limit is exceeded."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(bucket, (now, 0))
            if now - started >= self.period:
                started, count = now, 0
            count += 1
            self._windows[bucket] = (started, count)
            self._evict_expired(now)
            return count <= self.limit

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _evict_expired(self, now: float) -> None:
        if len(self._windows) < 1024:
            return
        expired = [b for b, (started, _) in self._windows.items() if now - started >= self.period]
        for bucket in expired:
            del self._windows[bucket]


_webhook_rate_limiter: Optional[RateLimiter] = None


def get_webhook_rate_limiter() -> RateLimiter:
    """Shared limiter for the webhook endpoint, built from settings on first use."""
    global _webhook_rate_limiter
    if _webhook_rate_limiter is None:
        _webhook_rate_limiter = RateLimiter(
            settings.WEBHOOK_RATE_LIMIT, settings.WEBHOOK_RATE_PERIOD_SECONDS
        )
    return _webhook_rate_limiter
