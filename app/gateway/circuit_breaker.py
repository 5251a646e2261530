"""Circuit Breaker keyed by provider identity.

Implements the circuit breaker pattern per ProviderIdentity:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many consecutive failures, requests are rejected immediately
  - HALF_OPEN: cool-down elapsed, exactly one trial request is admitted

A trial success closes the circuit and resets the failure counter; a trial
failure reopens it and restarts the cool-down.

State lives in memory for the process lifetime and is never persisted.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from app.gateway.errors import CircuitOpen
from app.gateway.types import ProviderIdentity

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class _CircuitStats:
    """Failure tracking for a single provider identity."""

    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    state: CircuitState = CircuitState.CLOSED
    opened_at: float | None = None
    trial_in_flight: bool = False

    @property
    def is_open(self) -> bool:
        return self.state != CircuitState.CLOSED


# Defaults for opening the circuit
FAILURE_THRESHOLD = 5  # Consecutive failures to open circuit
COOLDOWN_SECONDS = 60.0  # Seconds before trying half-open


class CircuitBreaker:
    """Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker(failure_threshold=5, cooldown_seconds=60)

        # Raises CircuitOpen when the call must be short-circuited
        cb.before_call(identity)

        # After the call:
        cb.record_success(identity)   # or
        cb.record_failure(identity)   # or
        cb.release(identity)          # outcome says nothing about provider health

    ``before_call`` and the ``record_*`` methods never await, so each one runs
    atomically with respect to other coroutines on the loop and only touches
    the circuit of its own identity.
    """

    def __init__(
        self,
        failure_threshold: int = FAILURE_THRESHOLD,
        cooldown_seconds: float = COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._circuits: dict[ProviderIdentity, _CircuitStats] = {}

    def _get_circuit(self, identity: ProviderIdentity) -> _CircuitStats:
        circuit = self._circuits.get(identity)
        if circuit is None:
            circuit = self._circuits[identity] = _CircuitStats()
        return circuit

    def before_call(self, identity: ProviderIdentity) -> None:
        """Admit the call or raise CircuitOpen."""
        circuit = self._get_circuit(identity)

        if circuit.state == CircuitState.CLOSED:
            return

        now = self._clock()
        if circuit.state == CircuitState.OPEN:
            elapsed = now - (circuit.opened_at or now)
            if elapsed < self.cooldown_seconds:
                raise CircuitOpen(
                    f"Circuit open for {identity.key}",
                    retry_after=self.cooldown_seconds - elapsed,
                )
            circuit.state = CircuitState.HALF_OPEN
            logger.info("Circuit for %s transitioning to HALF_OPEN", identity.key)

        # HALF_OPEN: exactly one trial call at a time
        if circuit.trial_in_flight:
            raise CircuitOpen(f"Circuit half-open for {identity.key}, trial call in flight")
        circuit.trial_in_flight = True

    def record_success(self, identity: ProviderIdentity) -> None:
        """Record a successful call; resets the failure counter and closes the circuit."""
        circuit = self._get_circuit(identity)
        circuit.consecutive_failures = 0
        circuit.total_successes += 1
        circuit.trial_in_flight = False

        if circuit.state != CircuitState.CLOSED:
            logger.info("Circuit for %s CLOSED (recovered)", identity.key)
            circuit.state = CircuitState.CLOSED
            circuit.opened_at = None

    def record_failure(self, identity: ProviderIdentity) -> None:
        """Record a failed call, opening the circuit at the threshold."""
        circuit = self._get_circuit(identity)
        circuit.consecutive_failures += 1
        circuit.total_failures += 1
        circuit.trial_in_flight = False

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning("Circuit for %s REOPENED after failed trial call", identity.key)
        elif circuit.state == CircuitState.CLOSED and circuit.consecutive_failures >= self.failure_threshold:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning(
                "Circuit for %s OPENED after %d consecutive failures",
                identity.key,
                circuit.consecutive_failures,
            )

    def release(self, identity: ProviderIdentity) -> None:
        """Free the trial slot without judging provider health (e.g. bad parameters, cancellation)."""
        circuit = self._get_circuit(identity)
        circuit.trial_in_flight = False

    def get_circuit_state(self, identity: ProviderIdentity) -> dict:
        """Get the current state of a provider's circuit."""
        circuit = self._get_circuit(identity)
        return {
            "provider": identity.key,
            "state": circuit.state.value,
            "is_open": circuit.is_open,
            "consecutive_failures": circuit.consecutive_failures,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
        }

    def get_all_states(self) -> list[dict]:
        """Get circuit states for every identity seen so far."""
        return [self.get_circuit_state(identity) for identity in list(self._circuits)]

    def reset(self, identity: ProviderIdentity) -> None:
        """Manually reset a provider's circuit to CLOSED."""
        circuit = self._get_circuit(identity)
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        circuit.opened_at = None
        circuit.trial_in_flight = False
        logger.info("Circuit for %s manually RESET", identity.key)
