"""Fixed-window rate limiter keyed by client (caller IP or API key).

Each client key gets a window of ``window_seconds``; at most ``max_requests``
calls are admitted per window. A rejected call fails fast with ``RateLimited``
carrying the wall-clock time the window resets.

Thread-safe via asyncio.Lock (one lock per client key). Expired windows are
swept lazily on later checks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.gateway.errors import RateLimited

logger = logging.getLogger(__name__)

# Sweep expired windows once the table grows past this many keys
_SWEEP_THRESHOLD = 1024


@dataclass
class RateWindow:
    """Fixed window for a single client key."""

    window_start: float
    request_count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def expired(self, now: float, window_seconds: float) -> bool:
        return now - self.window_start >= window_seconds


class FixedWindowRateLimiter:
    """Per-client fixed-window limiter.

    Usage:
        limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=100)

        # Raises RateLimited when the client is over its budget
        await limiter.check("203.0.113.7")
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}

    def _get_window(self, client_key: str, now: float) -> RateWindow:
        """Get or create the window for a client key."""
        window = self._windows.get(client_key)
        if window is None:
            if len(self._windows) >= _SWEEP_THRESHOLD:
                self._sweep(now)
            window = RateWindow(window_start=now)
            self._windows[client_key] = window
        return window

    def _sweep(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if w.expired(now, self.window_seconds) and not w.lock.locked()]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Rate limiter swept %d expired windows", len(expired))

    async def check(self, client_key: str) -> int:
        """Admit one request for the client or raise RateLimited.

        Returns the number of requests left in the current window.
        """
        window = self._get_window(client_key, self._clock())
        async with window.lock:
            now = self._clock()
            if window.expired(now, self.window_seconds):
                window.window_start = now
                window.request_count = 0

            if window.request_count >= self.max_requests:
                reset_ts = window.window_start + self.window_seconds
                retry_after = max(reset_ts - now, 0.0)
                logger.info("Client %s rate limited (%d/%d)", client_key, window.request_count, self.max_requests)
                raise RateLimited(
                    f"Rate limit of {self.max_requests} requests per {self.window_seconds:g}s exceeded",
                    reset_at=datetime.fromtimestamp(max(reset_ts, now), tz=timezone.utc),
                    retry_after=retry_after,
                )

            window.request_count += 1
            return self.max_requests - window.request_count

    def get_stats(self, client_key: str) -> dict:
        """Get current window stats for a client key."""
        now = self._clock()
        window = self._windows.get(client_key)
        if window is None or window.expired(now, self.window_seconds):
            used = 0
        else:
            used = window.request_count
        return {
            "client_key": client_key,
            "requests": used,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }

    def get_all_stats(self) -> dict:
        now = self._clock()
        active = sum(1 for w in self._windows.values() if not w.expired(now, self.window_seconds))
        return {
            "window_seconds": self.window_seconds,
            "max_requests": self.max_requests,
            "active_clients": active,
        }
