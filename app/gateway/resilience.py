"""Resilience Layer — provider-agnostic guard around every adapter call.

Policies are applied in a fixed order:
  1. Rate limit check (per client key)      → RateLimited
  2. Circuit breaker check (per provider)   → CircuitOpen
  3. Attempt with retry (idempotent only)   → UpstreamFailure after exhaustion

A rate-limit rejection never reaches the circuit breaker, so it cannot count
as a provider failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from app.gateway.circuit_breaker import CircuitBreaker
from app.gateway.errors import UpstreamFailure
from app.gateway.rate_limiter import FixedWindowRateLimiter
from app.gateway.retry import RetryExhausted, RetryPolicy
from app.gateway.types import ProviderIdentity, ResilienceConfig

logger = logging.getLogger(__name__)


class ResilienceLayer:
    """Composes the rate limiter, circuit breaker and retry policy."""

    def __init__(
        self,
        config: ResilienceConfig | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        config = config or ResilienceConfig()
        self.config = config
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            window_seconds=config.rate_limit_window_seconds,
            max_requests=config.rate_limit_max_requests,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            cooldown_seconds=config.circuit_cooldown_seconds,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_backoff_base,
            max_delay=config.retry_backoff_cap,
        )

    async def execute(
        self,
        identity: ProviderIdentity,
        client_key: str,
        call: Callable[[], Awaitable[Any]],
        idempotent: bool,
    ) -> tuple[Any, int]:
        """Run ``call`` under all three policies and return ``(payload, attempts)``."""
        await self.rate_limiter.check(client_key)
        self.circuit_breaker.before_call(identity)

        try:
            payload, attempts = await self.retry_policy.run(call, idempotent=idempotent, label=identity.key)
        except RetryExhausted as e:
            cause = e.cause
            if cause.is_client_error:
                # The provider answered; the request itself was bad
                self.circuit_breaker.record_success(identity)
            else:
                self.circuit_breaker.record_failure(identity)
            raise UpstreamFailure(
                f"{identity.provider_name} failed after {e.attempts} attempt(s): {cause}",
                attempts=e.attempts,
                transient=cause.transient,
                status_code=cause.status_code,
                timed_out=cause.timed_out,
            ) from cause
        except (Exception, asyncio.CancelledError):
            self.circuit_breaker.release(identity)
            raise

        self.circuit_breaker.record_success(identity)
        return payload, attempts

    def get_status(self) -> dict:
        return {
            "rate_limits": self.rate_limiter.get_all_stats(),
            "circuits": self.circuit_breaker.get_all_states(),
        }
