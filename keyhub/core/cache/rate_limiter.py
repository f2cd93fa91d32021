"""In-memory fixed-window rate limiting"""
import math
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Tuple

from keyhub.utils.logger import logger


@dataclass
class RateLimitResult:
    """Outcome of a single rate limit check"""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0


class RateLimiter:
    """
    Thread-safe fixed-window request counter.

    Features:
    - One counter per caller identifier (``ip:...``, ``token:...``, ``apikey:...``)
    - Window starts on the first hit and resets after ``window`` seconds
    - Periodic cleanup of elapsed windows
    - Performance metrics tracking

    Counters live in process memory only; losing them on restart is acceptable.
    """

    def __init__(self, timer: Callable[[], float] = time.time):
        self._timer = timer
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = RLock()

        # Metrics
        self._allowed = 0
        self._rejected = 0
        self._pruned = 0

    def hit(self, identifier: str, requests: int, window: int) -> RateLimitResult:
        """
        Count one request for ``identifier``.

        Args:
            identifier: Caller identity key
            requests: Maximum requests per window
            window: Window length in seconds

        Returns:
            RateLimitResult describing whether the request may proceed
        """
        with self._lock:
            now = self._timer()
            entry = self._windows.get(identifier)

            if entry is None or now > entry[1]:
                reset_at = now + window
                self._windows[identifier] = (1, reset_at)
                self._allowed += 1
                return RateLimitResult(True, requests, requests - 1, reset_at)

            count, reset_at = entry
            count += 1
            self._windows[identifier] = (count, reset_at)

            if count > requests:
                self._rejected += 1
                return RateLimitResult(False, requests, 0, reset_at, max(1, math.ceil(reset_at - now)))

            self._allowed += 1
            return RateLimitResult(True, requests, requests - count, reset_at)

    def reset(self, identifier: str) -> bool:
        """Forget the counter of one identifier"""
        with self._lock:
            return self._windows.pop(identifier, None) is not None

    def clear(self) -> None:
        """Clear all counters"""
        with self._lock:
            self._windows.clear()
            logger.info("Rate limit counters cleared")

    def cleanup_expired(self) -> int:
        """
        Remove counters whose window has elapsed.

        Returns:
            Number of counters removed
        """
        with self._lock:
            now = self._timer()
            expired = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]

            for key in expired:
                del self._windows[key]

            self._pruned += len(expired)
            if expired:
                logger.info(f"Pruned {len(expired)} expired rate limit counters")

            return len(expired)

    def get_stats(self) -> Dict:
        """Get rate limiter statistics"""
        with self._lock:
            return {
                "tracked": len(self._windows),
                "allowed": self._allowed,
                "rejected": self._rejected,
                "pruned": self._pruned,
            }
