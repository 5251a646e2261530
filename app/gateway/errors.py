"""Error taxonomy for the action gateway.

Every error carries a ``kind`` the caller can branch on and a ``retryable``
flag telling it whether backing off and trying again can help. Messages are
written by the gateway itself and never embed credentials or raw provider
tracebacks.
"""

from __future__ import annotations

from datetime import datetime

from app.gateway.types import AuditOutcome


class GatewayError(Exception):
    """Base class for all errors surfaced by ``ActionGateway.dispatch``."""

    kind: AuditOutcome = AuditOutcome.UPSTREAM_FAILURE
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class InvalidEnvelope(GatewayError):
    kind = AuditOutcome.INVALID_ENVELOPE
    http_status = 400


class UnknownProvider(GatewayError):
    kind = AuditOutcome.UNKNOWN_PROVIDER
    http_status = 404


class AdapterUnavailable(GatewayError):
    kind = AuditOutcome.ADAPTER_UNAVAILABLE
    http_status = 503


class RateLimited(GatewayError):
    kind = AuditOutcome.RATE_LIMITED
    http_status = 429
    retryable = True

    def __init__(self, message: str, reset_at: datetime, retry_after: float):
        super().__init__(message)
        self.reset_at = reset_at
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["resetAt"] = self.reset_at.isoformat()
        return data


class CircuitOpen(GatewayError):
    kind = AuditOutcome.CIRCUIT_OPEN
    http_status = 503
    retryable = True

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamFailure(GatewayError):
    """Wraps the provider's error once resilience policies are exhausted."""

    kind = AuditOutcome.UPSTREAM_FAILURE

    def __init__(
        self,
        message: str,
        attempts: int = 1,
        transient: bool = False,
        status_code: int = 0,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.retryable = transient
        self.status_code = status_code
        self.http_status = 504 if timed_out else 502

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempts"] = self.attempts
        if self.status_code:
            data["upstreamStatus"] = self.status_code
        return data


class Cancelled(GatewayError):
    """The caller's deadline expired before the call chain finished."""

    kind = AuditOutcome.CANCELLED
    http_status = 499
    retryable = True


# ---------------------------------------------------------------------------
# Adapter-internal errors
# ---------------------------------------------------------------------------


class AdapterConfigError(Exception):
    """Raised by an adapter constructor when required configuration is missing."""


class ProviderCallError(Exception):
    """Raised by an adapter when the remote call fails.

    ``transient`` marks failures worth retrying (network errors, timeouts,
    5xx and 429 responses). Client-class failures are permanent.
    """

    def __init__(self, message: str, status_code: int = 0, transient: bool = False, timed_out: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
        self.timed_out = timed_out

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500 and self.status_code != 429
