"""Mode Selector — picks the active deployment mode and its adapter sets.

The mode (remote-managed or self-hosted) is read from settings on first
access and cached for the process. Initialization is single-flight:
concurrent first callers all await the same task. A failed initialization is
not cached, so the next caller retries it.

Usage:
    selector = get_mode_selector()
    handle = await selector.resolve_adapter_set(ResourceKind.CHAT)
    cls = handle.adapter_class(handle.default_provider)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from app.core.config import Settings
from app.core.config import settings as app_settings
from app.gateway.adapters import ADAPTER_CATALOG, ProviderAdapter
from app.gateway.errors import AdapterUnavailable, UnknownProvider
from app.gateway.types import EndpointClass, ResourceKind

logger = logging.getLogger(__name__)


@dataclass
class AdapterSetHandle:
    """Providers available for one resource in the active mode."""

    resource: ResourceKind
    endpoint_class: EndpointClass
    default_provider: str
    adapters: dict[str, type[ProviderAdapter]] = field(default_factory=dict)

    def provider_names(self) -> list[str]:
        return sorted(self.adapters)

    def adapter_class(self, provider_name: str) -> type[ProviderAdapter]:
        cls = self.adapters.get(provider_name)
        if cls is None:
            raise UnknownProvider(
                f"Unknown provider '{provider_name}' for {self.resource.value} "
                f"in {self.endpoint_class.value} mode (available: {', '.join(self.provider_names())})"
            )
        return cls

    def to_dict(self) -> dict:
        return {
            "resource": self.resource.value,
            "endpointClass": self.endpoint_class.value,
            "defaultProvider": self.default_provider,
            "providers": {name: sorted(cls.actions) for name, cls in sorted(self.adapters.items())},
        }


def build_adapter_sets(settings: Settings, endpoint_class: EndpointClass) -> dict[ResourceKind, AdapterSetHandle]:
    """Group the mode's adapter catalog by resource and attach default providers."""
    sets = {
        resource: AdapterSetHandle(
            resource=resource,
            endpoint_class=endpoint_class,
            default_provider=settings.default_provider(resource, endpoint_class),
        )
        for resource in ResourceKind
    }
    for cls in ADAPTER_CATALOG[endpoint_class]:
        sets[cls.resource].adapters[cls.provider_name] = cls

    for handle in sets.values():
        if handle.default_provider not in handle.adapters:
            raise AdapterUnavailable(
                f"Default {handle.resource.value} provider '{handle.default_provider}' "
                f"is not available in {endpoint_class.value} mode"
            )
    return sets


class ModeSelector:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or app_settings
        self._endpoint_class: EndpointClass | None = None
        self._sets: dict[ResourceKind, AdapterSetHandle] | None = None
        self._init_task: asyncio.Task | None = None

    @property
    def endpoint_class(self) -> EndpointClass | None:
        """Active mode, or None before the first successful initialization."""
        return self._endpoint_class

    async def _initialize(self) -> dict[ResourceKind, AdapterSetHandle]:
        mode = self.settings.deployment_mode
        try:
            endpoint_class = EndpointClass(mode)
        except ValueError:
            raise AdapterUnavailable(
                f"DEPLOYMENT_MODE must be one of {[m.value for m in EndpointClass]}, got '{mode}'"
            ) from None

        sets = build_adapter_sets(self.settings, endpoint_class)
        self._endpoint_class = endpoint_class
        self._sets = sets
        logger.info("Gateway mode initialized: %s", endpoint_class.value)
        return sets

    async def _ensure_initialized(self) -> dict[ResourceKind, AdapterSetHandle]:
        if self._sets is not None:
            return self._sets

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            # Shielded so one cancelled caller does not abort the shared init
            return await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def resolve_adapter_set(self, resource: ResourceKind) -> AdapterSetHandle:
        sets = await self._ensure_initialized()
        return sets[resource]

    async def all_adapter_sets(self) -> list[AdapterSetHandle]:
        sets = await self._ensure_initialized()
        return [sets[resource] for resource in ResourceKind]

    def reset(self) -> None:
        """Forget the resolved mode; the next call initializes again."""
        self._endpoint_class = None
        self._sets = None
        self._init_task = None


_selector: ModeSelector | None = None


def get_mode_selector() -> ModeSelector:
    """Process-wide selector, created on first use."""
    global _selector
    if _selector is None:
        _selector = ModeSelector()
    return _selector
