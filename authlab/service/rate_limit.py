from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from authlab.logging import get_logger
from authlab.storage.models import utcnow

logger = get_logger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Token bucket per ``(identity, endpoint)``.

    Each bucket holds up to ``limit`` tokens and refills at
    ``limit / window_seconds`` tokens per second. Kept outside the
    authentication engine so callers can swap or disable it.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.enabled = enabled
        self._clock = clock or utcnow
        self._buckets: Dict[Tuple[str, str], Tuple[float, datetime, int]] = {}
        self._lock = threading.Lock()

    def check(
        self,
        identity: str,
        endpoint: str,
        limit: int,
        window_seconds: int = 60,
        *,
        cost: int = 1,
    ) -> RateLimitDecision:
        if not self.enabled or limit <= 0:
            return RateLimitDecision(True, limit, limit, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                endpoint=endpoint,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        key = (identity, endpoint)
        with self._lock:
            tokens, last_ts, _ = self._buckets.get(key, (float(limit), now, window_seconds))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now, window_seconds)
            reset_seconds = (
                int((cost - tokens) / refill_rate) + 1 if not allowed else 0
            )
        if not allowed:
            logger.info("rate_limited", endpoint=endpoint, reset_seconds=reset_seconds)
        return RateLimitDecision(allowed, limit, int(tokens), reset_seconds)

    def sweep_idle(self) -> int:
        """Drop buckets idle for a full window; they have refilled completely."""
        now = self._clock()
        with self._lock:
            idle = [
                key
                for key, (_, last_ts, window) in self._buckets.items()
                if (now - last_ts).total_seconds() >= window
            ]
            for key in idle:
                del self._buckets[key]
        return len(idle)

    def __len__(self) -> int:
        return len(self._buckets)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
