"""Action Gateway — dispatch core integrating all gateway components.

Main entry point for executing one action against an external provider:
  1. Validates the ActionEnvelope
  2. Resolves the adapter set for the active mode (Mode Selector)
  3. Picks the provider: providerHint or the per-resource default
  4. Rejects unsupported actions and malformed parameters, before any construction
  5. Gets or constructs the adapter (Adapter Registry)
  6. Executes through rate limit → circuit breaker → retry (Resilience Layer)
  7. Emits exactly one AuditRecord, whatever the outcome

Usage:
    gateway = ActionGateway()
    result = await gateway.dispatch(
        ActionEnvelope(resource="search", action="web", parameters={"query": "..."}),
        client_key="team-a",
        timeout=30,
    )
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from functools import partial
from typing import Any

import httpx

from app.core.config import Settings
from app.core.config import settings as app_settings
from app.core.metrics import CIRCUIT_OPEN_COUNT, DISPATCH_COUNT, DISPATCH_DURATION, RATE_LIMITED_COUNT
from app.gateway.audit import AuditEmitter, build_audit_sink, redact_parameters
from app.gateway.errors import Cancelled, GatewayError, InvalidEnvelope, UnknownProvider, UpstreamFailure
from app.gateway.mode import ModeSelector, get_mode_selector
from app.gateway.registry import AdapterRegistry
from app.gateway.resilience import ResilienceLayer
from app.gateway.types import (
    ActionEnvelope,
    AuditOutcome,
    AuditRecord,
    ExecutionResult,
    ProviderIdentity,
    ResourceKind,
)

logger = logging.getLogger(__name__)


class ActionGateway:
    """Dispatch core.

    Integrates:
      - ModeSelector: remote-managed or self-hosted adapter sets
      - AdapterRegistry: lazily constructed, cached provider adapters
      - ResilienceLayer: rate limiter, circuit breaker, retry with backoff
      - AuditEmitter: fire-and-forget audit records

    The gateway keeps no per-call state of its own.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        mode_selector: ModeSelector | None = None,
        registry: AdapterRegistry | None = None,
        resilience: ResilienceLayer | None = None,
        audit: AuditEmitter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            settings: Override application settings (credentials, mode, resilience)
            mode_selector: Override the process-wide mode selector
            registry: Override the adapter registry
            resilience: Override the resilience layer
            audit: Override the audit emitter (sink chosen by AUDIT_SINK otherwise)
            transport: httpx transport handed to every adapter client (tests)
        """
        self.settings = settings or app_settings
        if mode_selector is None:
            mode_selector = get_mode_selector() if settings is None else ModeSelector(self.settings)
        self.mode_selector = mode_selector
        self.registry = registry or AdapterRegistry(self.settings, mode_selector=mode_selector, transport=transport)
        self.resilience = resilience or ResilienceLayer(self.settings.resilience_config())
        self.audit = audit or AuditEmitter(build_audit_sink(self.settings))

    # -- dispatch ------------------------------------------------------------

    async def dispatch(
        self,
        envelope: ActionEnvelope,
        *,
        client_key: str = "anonymous",
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Execute one envelope and return its normalized result.

        Args:
            envelope: The action to run
            client_key: Rate-limit key of the caller
            timeout: Deadline in seconds for the whole resilience-wrapped call
                chain; defaults to DISPATCH_TIMEOUT_SECONDS, 0 disables it

        Raises:
            GatewayError subclass describing the failure. If the calling task
            is cancelled, asyncio.CancelledError propagates after the audit
            record is emitted.
        """
        start = time.monotonic()
        identity: ProviderIdentity | None = None

        try:
            resource = self._validate(envelope)
            if timeout is not None and (
                isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0
            ):
                raise InvalidEnvelope("timeoutSeconds must be a non-negative number")

            handle = await self.mode_selector.resolve_adapter_set(resource)
            provider_name = envelope.provider_hint or handle.default_provider
            adapter_cls = handle.adapter_class(provider_name)
            identity = adapter_cls.identity()

            if not adapter_cls.supports_action(envelope.action):
                raise UnknownProvider(
                    f"Provider '{provider_name}' does not support {resource.value}.{envelope.action} "
                    f"(supported: {', '.join(sorted(adapter_cls.actions))})"
                )

            arguments = adapter_cls.validate(envelope.action, envelope.parameters)

            adapter = await self.registry.get(resource, provider_name)
            call = partial(adapter.run, envelope.action, arguments, session_id=envelope.session_id)
            payload, attempts = await self._run_with_deadline(
                self.resilience.execute(
                    identity,
                    client_key,
                    call,
                    idempotent=adapter_cls.is_idempotent(envelope.action),
                ),
                timeout,
            )

        except GatewayError as e:
            self._record(envelope, identity, e.kind, start, client_key, getattr(e, "attempts", 0), e.message)
            raise
        except asyncio.CancelledError:
            self._record(envelope, identity, AuditOutcome.CANCELLED, start, client_key, 0, "dispatch cancelled")
            raise
        except Exception as e:
            # Adapter bug or unexpected provider payload shape
            logger.exception("Unexpected error dispatching %s", identity.key if identity else envelope.resource)
            failure = UpstreamFailure(
                f"{identity.provider_name if identity else 'provider'} returned an unexpected response "
                f"({type(e).__name__})"
            )
            self._record(envelope, identity, failure.kind, start, client_key, 1, failure.message)
            raise failure from e

        latency_ms = self._record(envelope, identity, AuditOutcome.SUCCESS, start, client_key, attempts)
        return ExecutionResult(
            success=True,
            payload=payload,
            provider=identity,
            latency_ms=latency_ms,
            attempts=attempts,
        )

    async def _run_with_deadline(self, guarded, timeout: float | None) -> tuple[Any, int]:
        limit = self.settings.dispatch_timeout_seconds if timeout is None else timeout
        if not limit or limit <= 0:
            return await guarded
        try:
            return await asyncio.wait_for(guarded, timeout=limit)
        except asyncio.TimeoutError:
            raise Cancelled(f"Dispatch exceeded its {limit:g}s deadline") from None

    @staticmethod
    def _validate(envelope: ActionEnvelope) -> ResourceKind:
        try:
            resource = ResourceKind(envelope.resource)
        except ValueError:
            valid = ", ".join(r.value for r in ResourceKind)
            raise InvalidEnvelope(f"resource must be one of: {valid}") from None

        if not isinstance(envelope.action, str) or not envelope.action.strip():
            raise InvalidEnvelope("action must be a non-empty string")
        if envelope.parameters is None:
            raise InvalidEnvelope("parameters is required")
        if not isinstance(envelope.parameters, Mapping):
            raise InvalidEnvelope("parameters must be an object")
        if envelope.session_id is not None and (
            not isinstance(envelope.session_id, str) or not envelope.session_id.strip()
        ):
            raise InvalidEnvelope("sessionId must be a non-empty string when given")
        if envelope.provider_hint is not None and (
            not isinstance(envelope.provider_hint, str) or not envelope.provider_hint.strip()
        ):
            raise InvalidEnvelope("providerHint must be a non-empty string when given")
        return resource

    # -- audit ---------------------------------------------------------------

    def _record(
        self,
        envelope: ActionEnvelope,
        identity: ProviderIdentity | None,
        outcome: AuditOutcome,
        start: float,
        client_key: str,
        attempts: int,
        error_message: str = "",
    ) -> int:
        """Emit the audit record and metrics for one dispatch; returns latency in ms."""
        latency = time.monotonic() - start
        latency_ms = int(latency * 1000)

        resource = _resource_label(envelope.resource)
        parameters = envelope.parameters if isinstance(envelope.parameters, Mapping) else {}
        self.audit.emit(
            AuditRecord(
                resource=resource,
                action=envelope.action if isinstance(envelope.action, str) else "",
                parameters=redact_parameters(parameters, self.settings.credential_values()),
                outcome=outcome,
                session_id=envelope.session_id if isinstance(envelope.session_id, str) else None,
                provider=identity,
                error_message=redact_parameters(error_message, self.settings.credential_values()),
                latency_ms=latency_ms,
                attempts=attempts,
                client_key=client_key,
            )
        )

        provider = identity.provider_name if identity else "-"
        DISPATCH_COUNT.labels(resource=resource, provider=provider, outcome=outcome.value).inc()
        DISPATCH_DURATION.labels(resource=resource, provider=provider).observe(latency)
        if outcome == AuditOutcome.CIRCUIT_OPEN:
            CIRCUIT_OPEN_COUNT.labels(provider=identity.key if identity else "-").inc()
        elif outcome == AuditOutcome.RATE_LIMITED:
            RATE_LIMITED_COUNT.inc()

        if outcome == AuditOutcome.SUCCESS:
            logger.info(
                "Dispatched %s.%s via %s in %dms (attempts=%d)",
                resource,
                envelope.action,
                provider,
                latency_ms,
                attempts,
            )
        else:
            logger.warning(
                "Dispatch %s.%s via %s failed: %s (%s)",
                resource,
                envelope.action,
                provider,
                outcome.value,
                error_message,
            )
        return latency_ms

    # -- status / lifecycle -------------------------------------------------

    async def get_status(self) -> dict:
        """Get comprehensive gateway status."""
        await self.mode_selector.resolve_adapter_set(ResourceKind.CHAT)
        return {
            "mode": self.mode_selector.endpoint_class.value,
            **self.resilience.get_status(),
            "adapters": [identity.key for identity in self.registry.cached_identities()],
            "pending_audit_writes": self.audit.pending,
        }

    async def aclose(self) -> None:
        """Drain pending audit writes and close cached adapter clients."""
        await self.audit.aclose()
        await self.registry.aclose()


def _resource_label(resource: Any) -> str:
    try:
        return ResourceKind(resource).value
    except ValueError:
        return "invalid"
