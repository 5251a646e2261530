"""Core types and DTOs for the action gateway."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ResourceKind(str, Enum):
    """Capability families exposed through the gateway."""

    CHAT = "chat"
    SEARCH = "search"
    BROWSER = "browser"
    RUNTIME = "runtime"
    MEMORY = "memory"


class EndpointClass(str, Enum):
    """Deployment mode an adapter belongs to."""

    REMOTE_MANAGED = "remote-managed"  # Provider APIs, provider-held session state
    SELF_HOSTED = "self-hosted"  # Local equivalents


class ResourceScope(str, Enum):
    """Who owns the lifetime of the remote resource an adapter works with."""

    STATELESS = "stateless"
    PER_CALL = "per_call"  # Provisioned and torn down inside one execute()
    BY_CALLER = "by_caller"  # Survives across calls until the caller closes it


class AuditOutcome(str, Enum):
    """Outcome recorded on every audit record."""

    SUCCESS = "success"
    INVALID_ENVELOPE = "invalid_envelope"
    UNKNOWN_PROVIDER = "unknown_provider"
    ADAPTER_UNAVAILABLE = "adapter_unavailable"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    UPSTREAM_FAILURE = "upstream_failure"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Action Envelope (gateway input)
# ---------------------------------------------------------------------------


@dataclass
class ActionEnvelope:
    """A single action request.

    ``resource`` is kept as given (string or ResourceKind) so validation can
    reject unknown values with a proper error instead of failing on construction.
    ``from_dict`` leaves a missing ``parameters`` field as None so dispatch can
    reject it.
    """

    resource: ResourceKind | str = ""
    action: str = ""
    parameters: dict[str, Any] | None = field(default_factory=dict)
    session_id: str | None = None
    provider_hint: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ActionEnvelope:
        """Build from the inbound JSON shape (camelCase or snake_case keys)."""
        return cls(
            resource=data.get("resource", ""),
            action=data.get("action", ""),
            parameters=data.get("parameters"),
            session_id=data.get("sessionId", data.get("session_id")),
            provider_hint=data.get("providerHint", data.get("provider_hint")),
        )


# ---------------------------------------------------------------------------
# Provider identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderIdentity:
    """Stable key for one (resource, provider, endpoint class) combination."""

    resource: ResourceKind
    provider_name: str
    endpoint_class: EndpointClass

    @property
    def key(self) -> str:
        return f"{self.resource.value}:{self.provider_name}:{self.endpoint_class.value}"

    def to_dict(self) -> dict:
        return {
            "resource": self.resource.value,
            "providerName": self.provider_name,
            "endpointClass": self.endpoint_class.value,
        }


# ---------------------------------------------------------------------------
# Execution Result (gateway output)
# ---------------------------------------------------------------------------


@dataclass
class ExecutionResult:
    """Normalized result of one dispatched envelope."""

    success: bool
    payload: Any
    provider: ProviderIdentity
    latency_ms: int = 0
    attempts: int = 1

    def to_dict(self) -> dict:
        """Serialize to the outbound response shape."""
        return {
            "success": self.success,
            "result": self.payload,
            "provider": self.provider.to_dict(),
            "latencyMs": self.latency_ms,
            "attempts": self.attempts,
        }


# ---------------------------------------------------------------------------
# Audit Record
# ---------------------------------------------------------------------------


@dataclass
class AuditRecord:
    """Write-once record of a dispatched action, handed to the audit sink."""

    resource: str
    action: str
    parameters: dict[str, Any]
    outcome: AuditOutcome
    session_id: str | None = None
    provider: ProviderIdentity | None = None
    error_message: str = ""
    latency_ms: int = 0
    attempts: int = 0
    client_key: str = ""
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "session_id": self.session_id,
            "resource": self.resource,
            "action": self.action,
            "parameters": self.parameters,
            "provider": self.provider.key if self.provider else None,
            "outcome": self.outcome.value,
            "error_message": self.error_message,
            "latency_ms": self.latency_ms,
            "attempts": self.attempts,
            "client_key": self.client_key,
            "created_at": self.created_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Resilience config
# ---------------------------------------------------------------------------


@dataclass
class ResilienceConfig:
    """Rate limit, circuit breaker and retry parameters."""

    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 60
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 60.0
    retry_max_attempts: int = 3
    retry_backoff_base: float = 0.5  # Base delay for exponential backoff (seconds)
    retry_backoff_cap: float = 10.0  # Cap on retry delay
