"""Provider adapter contract.

Each adapter wraps one external capability behind a fixed contract:

    arguments = AdapterClass.validate(action, params)   # pure, raises InvalidEnvelope
    await adapter.run(action, arguments, session_id=...) -> normalized payload

``execute`` chains both for callers that hold raw parameters.

Class attributes describe the adapter to the registry and the dispatcher
without constructing it: which resource and provider it serves, which
deployment mode it belongs to, which actions it supports (and whether each one
is idempotent, i.e. safe to retry), and who owns the lifetime of the remote
resources it creates.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import httpx

from app.core.config import Settings
from app.gateway.errors import AdapterConfigError, InvalidEnvelope, ProviderCallError
from app.gateway.types import EndpointClass, ProviderIdentity, ResourceKind, ResourceScope

logger = logging.getLogger(__name__)

# Caller-supplied ids that end up as one URL path segment
_PATH_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


class ProviderAdapter(ABC):
    """Base class for all provider adapters."""

    resource: ResourceKind
    provider_name: str
    endpoint_class: EndpointClass = EndpointClass.REMOTE_MANAGED
    scope: ResourceScope = ResourceScope.STATELESS

    # action name → idempotent (retry-safe)
    actions: dict[str, bool] = {}

    base_url: str = ""
    base_url_setting: str = ""  # Settings field overriding base_url (self-hosted endpoints)
    api_key_setting: str = ""  # Settings field holding the credential
    requires_api_key: bool = True
    timeout_seconds: float = 60.0

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.api_key = getattr(settings, self.api_key_setting, "") if self.api_key_setting else ""
        if self.requires_api_key and not self.api_key:
            raise AdapterConfigError(f"{self.api_key_setting.upper()} is not configured for {self.provider_name}")

        if self.base_url_setting:
            self.base_url = getattr(settings, self.base_url_setting)

        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=transport,
        )

    # -- contract --------------------------------------------------------

    @classmethod
    def supports_action(cls, action: str) -> bool:
        return action in cls.actions

    @classmethod
    def is_idempotent(cls, action: str) -> bool:
        return cls.actions.get(action, False)

    @classmethod
    def identity(cls) -> ProviderIdentity:
        return ProviderIdentity(
            resource=cls.resource,
            provider_name=cls.provider_name,
            endpoint_class=cls.endpoint_class,
        )

    @classmethod
    def validate(cls, action: str, params: Mapping[str, Any]) -> dict[str, Any]:
        """Check the parameters of one action and return the arguments ``run`` consumes.

        Runs without an adapter instance and without I/O, so the dispatcher can
        reject a malformed envelope before it reaches the resilience layer.

        Raises:
            InvalidEnvelope: a parameter is missing or malformed
        """
        return dict(params)

    @abstractmethod
    async def run(self, action: str, arguments: Mapping[str, Any], *, session_id: str | None = None) -> dict:
        """Run one action on validated arguments and return the normalized payload."""
        ...

    async def execute(self, action: str, params: Mapping[str, Any], *, session_id: str | None = None) -> dict:
        return await self.run(action, self.validate(action, params), session_id=session_id)

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- helpers ---------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        authenticated: bool = True,
        timeout: float | None = None,
    ) -> Any:
        """Send one HTTP request and return the decoded body.

        Failures become ProviderCallError with a message that carries no URL,
        header or credential. The original httpx exception is not chained.
        """
        request_headers = {**self._auth_headers()} if authenticated else {}
        if headers:
            request_headers.update(headers)

        try:
            resp = await self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers=request_headers,
                timeout=timeout or self.timeout_seconds,
            )
        except httpx.TimeoutException:
            raise ProviderCallError(f"{self.provider_name} timed out", transient=True, timed_out=True) from None
        except httpx.TransportError as e:
            raise ProviderCallError(
                f"{self.provider_name} connection error ({type(e).__name__})", transient=True
            ) from None

        if resp.status_code >= 400:
            transient = resp.status_code >= 500 or resp.status_code == 429
            logger.debug("%s returned HTTP %d", self.provider_name, resp.status_code)
            raise ProviderCallError(
                f"{self.provider_name} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                transient=transient,
            )

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {"text": resp.text}


# ---------------------------------------------------------------------------
# Parameter helpers
# ---------------------------------------------------------------------------


def require_str(params: Mapping[str, Any], name: str, context: str) -> str:
    """Return a non-empty string parameter or raise InvalidEnvelope."""
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidEnvelope(f"parameters.{name} is required for {context}")
    return value


def optional_segment(params: Mapping[str, Any], name: str, context: str) -> str | None:
    """Return an id that is safe to place in a URL path, or None when absent."""
    value = params.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not _PATH_SEGMENT.match(value):
        raise InvalidEnvelope(f"parameters.{name} is not a valid id for {context}")
    return value


def require_segment(params: Mapping[str, Any], name: str, context: str) -> str:
    value = optional_segment(params, name, context)
    if value is None:
        raise InvalidEnvelope(f"parameters.{name} is required for {context}")
    return value


def optional_int(params: Mapping[str, Any], name: str, default: int, context: str) -> int:
    value = params.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidEnvelope(f"parameters.{name} must be a positive integer for {context}")
    return value


def optional_float(params: Mapping[str, Any], name: str, default: float, context: str) -> float:
    value = params.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidEnvelope(f"parameters.{name} must be a number for {context}")
    return float(value)
