"""
Per-provider Rate Limiting: fixed window counters.

Each provider gets ``requests`` calls per ``window_seconds`` bucket, where
the bucket is ``floor(now / window_seconds)``. No queuing, no backpressure:
callers get an immediate rejection and decide whether to fall back.

Counters are shared mutable state; every read-modify-write runs under a lock.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

import structlog

from aeges.exceptions import RateLimited

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderLimit:
    """Request budget for one provider."""
    requests: int
    window_seconds: float = 60.0


class FixedWindowRateLimiter:
    """
    Fixed-window counter keyed by (provider, window_index).

    Providers without a configured limit are never throttled.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, ProviderLimit]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._limits: dict[str, ProviderLimit] = dict(limits or {})
        self._clock = clock
        self._counts: dict[tuple[str, int], int] = {}
        self._lock = threading.Lock()

    def set_limit(self, provider: str, limit: ProviderLimit) -> None:
        with self._lock:
            self._limits[provider] = limit

    def window_index(self, provider: str) -> int:
        limit = self._limits.get(provider)
        if limit is None:
            return 0
        return int(self._clock() // limit.window_seconds)

    def can_proceed(self, provider: str) -> bool:
        """False once the current window's counter reaches the limit."""
        limit = self._limits.get(provider)
        if limit is None:
            return True
        with self._lock:
            key = (provider, self.window_index(provider))
            return self._counts.get(key, 0) < limit.requests

    def record(self, provider: str) -> int:
        """Count one request in the current window. Returns the window index."""
        if provider not in self._limits:
            return 0
        with self._lock:
            window = self.window_index(provider)
            key = (provider, window)
            self._counts[key] = self._counts.get(key, 0) + 1
            self._prune(provider, window)
            return window

    def acquire(self, provider: str) -> int:
        """
        Atomic check-and-record.

        Raises:
            RateLimited: the provider's budget for this window is spent.
        """
        limit = self._limits.get(provider)
        if limit is None:
            return 0
        with self._lock:
            window = self.window_index(provider)
            key = (provider, window)
            current = self._counts.get(key, 0)
            if current >= limit.requests:
                logger.warning(
                    "provider_rate_limited",
                    provider=provider,
                    limit=limit.requests,
                    window_seconds=limit.window_seconds,
                )
                raise RateLimited(
                    provider,
                    f"Rate limit exceeded for provider: {provider}",
                    details={"limit": limit.requests, "window_seconds": limit.window_seconds},
                )
            self._counts[key] = current + 1
            self._prune(provider, window)
            return window

    def refund(self, provider: str, window: int) -> None:
        """Return one unit of budget for a call that never completed."""
        with self._lock:
            key = (provider, window)
            count = self._counts.get(key, 0)
            if count > 0:
                self._counts[key] = count - 1

    def remaining(self, provider: str) -> Optional[int]:
        limit = self._limits.get(provider)
        if limit is None:
            return None
        with self._lock:
            used = self._counts.get((provider, self.window_index(provider)), 0)
            return max(0, limit.requests - used)

    def reset(self, provider: Optional[str] = None) -> None:
        with self._lock:
            if provider is None:
                self._counts.clear()
            else:
                for key in [k for k in self._counts if k[0] == provider]:
                    del self._counts[key]

    def _prune(self, provider: str, current_window: int) -> None:
        for key in [k for k in self._counts if k[0] == provider and k[1] < current_window]:
            del self._counts[key]
