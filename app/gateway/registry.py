"""Adapter Registry — lazily constructs and caches provider adapters.

Adapters are cached by ProviderIdentity. Construction happens under a lock
per identity, so two concurrent first calls for the same provider build one
adapter while unrelated providers never wait on each other. A construction
failure (missing credential, bad endpoint setting) is reported as
AdapterUnavailable and is not cached.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from app.core.config import Settings
from app.core.config import settings as app_settings
from app.gateway.adapters import ProviderAdapter
from app.gateway.errors import AdapterConfigError, AdapterUnavailable
from app.gateway.mode import ModeSelector, get_mode_selector
from app.gateway.types import ProviderIdentity, ResourceKind

logger = logging.getLogger(__name__)


class AdapterRegistry:
    def __init__(
        self,
        settings: Settings | None = None,
        mode_selector: ModeSelector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            settings: Credentials and endpoints handed to each adapter
            mode_selector: Resolves provider names to adapter classes for the active mode
            transport: Optional httpx transport shared by every adapter client (tests)
        """
        self.settings = settings or app_settings
        self.mode_selector = mode_selector or get_mode_selector()
        self._transport = transport
        self._adapters: dict[ProviderIdentity, ProviderAdapter] = {}
        self._locks: dict[ProviderIdentity, asyncio.Lock] = {}

    async def get(self, resource: ResourceKind, provider_name: str) -> ProviderAdapter:
        """Return the cached adapter for the provider, constructing it on first use.

        Raises UnknownProvider when the active mode has no such provider and
        AdapterUnavailable when construction fails.
        """
        handle = await self.mode_selector.resolve_adapter_set(resource)
        adapter_cls = handle.adapter_class(provider_name)
        identity = adapter_cls.identity()
        adapter = self._adapters.get(identity)
        if adapter is not None:
            return adapter

        lock = self._locks.setdefault(identity, asyncio.Lock())
        async with lock:
            adapter = self._adapters.get(identity)
            if adapter is not None:
                return adapter
            try:
                adapter = adapter_cls(self.settings, transport=self._transport)
            except AdapterConfigError as e:
                logger.warning("Adapter %s unavailable: %s", identity.key, e)
                raise AdapterUnavailable(str(e)) from None
            self._adapters[identity] = adapter
            logger.info("Adapter %s constructed", identity.key)
            return adapter

    def cached_identities(self) -> list[ProviderIdentity]:
        return list(self._adapters)

    async def aclose(self) -> None:
        adapters = list(self._adapters.values())
        self._adapters.clear()
        for adapter in adapters:
            try:
                await adapter.aclose()
            except Exception as e:
                logger.warning("Failed to close adapter %s: %s", adapter.identity().key, e)
