"""Retry with exponential backoff and jitter.

Backoff strategy:
  delay = min(base * 2^attempt + jitter, cap)
  jitter = random(0, base * 0.5)

Only idempotent actions are retried, and only on transient provider failures
(network errors, timeouts, 5xx and 429). Anything else propagates after the
first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from app.gateway.errors import ProviderCallError

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """The last attempt failed; carries the provider error and the attempt count."""

    def __init__(self, cause: ProviderCallError, attempts: int):
        super().__init__(str(cause))
        self.cause = cause
        self.attempts = attempts


class RetryPolicy:
    """Runs a call up to ``max_attempts`` times.

    Usage:
        policy = RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=10)
        result, attempts = await policy.run(call, idempotent=True, label="search:tavily")
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @staticmethod
    def calculate_backoff(
        attempt: int,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
    ) -> float:
        """Calculate exponential backoff with jitter.

        Formula: min(base * 2^attempt + jitter, max_delay)
        Jitter: random(0, base * 0.5)
        """
        exponential = base_delay * (2**attempt)
        jitter = random.uniform(0, base_delay * 0.5)
        return min(exponential + jitter, max_delay)

    async def run(
        self,
        call: Callable[[], Awaitable[Any]],
        idempotent: bool,
        label: str = "",
    ) -> tuple[Any, int]:
        """Run ``call`` and return ``(result, attempts)``.

        Raises RetryExhausted wrapping the last ProviderCallError. Errors of any
        other type propagate untouched after the attempt that raised them.
        """
        budget = self.max_attempts if idempotent else 1

        for attempt in range(budget):
            try:
                return await call(), attempt + 1
            except ProviderCallError as e:
                if not e.transient or attempt + 1 >= budget:
                    raise RetryExhausted(e, attempt + 1) from e

                delay = self.calculate_backoff(attempt, self.base_delay, self.max_delay)
                logger.info(
                    "Retry %d/%d for %s in %.2fs: %s",
                    attempt + 1,
                    budget - 1,
                    label,
                    delay,
                    e,
                )
                await self._sleep(delay)

