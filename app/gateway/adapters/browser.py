"""Browser automation adapters — session-scoped, owned by the caller.

A remote browser session outlives a single dispatch. Each call resolves its
session in this order:
  1. ``parameters.browserSessionId`` supplied by the caller
  2. the envelope's session id, if this adapter provisioned it earlier
  3. otherwise a new remote session is provisioned

Every payload carries ``browserSessionId`` so the caller can reuse the
session and, eventually, ``close`` it. The gateway never reclaims abandoned
sessions on its own. A session provisioned by a call whose action then fails
is released right away, since the caller never learned its id.

Vendor-specific behaviors:
  - Browserbase: managed session pool, full-page scrape through Scrapybara
  - Steel: self-hosted session browser with the same session/action contract
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import abstractmethod
from collections.abc import Mapping
from typing import Any

import httpx

from app.core.config import Settings
from app.gateway.adapters.base import ProviderAdapter, optional_segment, require_str
from app.gateway.errors import AdapterUnavailable, InvalidEnvelope
from app.gateway.normalizer import normalize_browser_action
from app.gateway.types import EndpointClass, ResourceKind, ResourceScope

logger = logging.getLogger(__name__)

_VIEWPORT = {"width": 1920, "height": 1080}

_EXTRACT_SCRIPT = """
const elements = document.querySelectorAll({selector});
return Array.from(elements).map(el => ({{
  text: el.textContent,
  href: el.href || null,
  src: el.src || null
}}));
"""


class BrowserAdapter(ProviderAdapter):
    resource = ResourceKind.BROWSER
    scope = ResourceScope.BY_CALLER
    actions = {
        "navigate": False,
        "click": False,
        "type": False,
        "screenshot": True,
        "extract": True,
        "scrape": True,
        "close": False,
    }

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport=transport)
        self._sessions: set[str] = set()  # Sessions provisioned through this adapter

    @property
    def open_sessions(self) -> set[str]:
        return set(self._sessions)

    def _existing_session(self, arguments: Mapping[str, Any], session_id: str | None) -> str | None:
        if arguments.get("browserSessionId"):
            return arguments["browserSessionId"]
        if session_id and session_id in self._sessions:
            return session_id
        return None

    @classmethod
    def validate(cls, action: str, params: Mapping[str, Any]) -> dict[str, Any]:
        context = f"browser.{action}"
        arguments: dict[str, Any] = {"browserSessionId": optional_segment(params, "browserSessionId", context)}
        if action == "scrape":
            arguments.update(
                url=require_str(params, "url", context),
                selector=params.get("selector"),
                extractRules=params.get("extractRules"),
            )
        elif action != "close":
            arguments["command"] = cls._build_command(action, params, context)
        return arguments

    async def run(self, action: str, arguments: Mapping[str, Any], *, session_id: str | None = None) -> dict:
        browser_session_id = self._existing_session(arguments, session_id)

        if action == "scrape":
            data = await self.scrape(arguments["url"], arguments)
            return normalize_browser_action(data, browser_session_id, action)

        if action == "close":
            if not browser_session_id:
                raise InvalidEnvelope("parameters.browserSessionId is required for browser.close")
            await self.release_session(browser_session_id)
            self._sessions.discard(browser_session_id)
            logger.info("Browser session %s closed", browser_session_id)
            return {"browserSessionId": browser_session_id, "action": action, "closed": True}

        command = arguments["command"]

        provisioned = False
        if browser_session_id is None:
            browser_session_id = await self.create_session()
            self._sessions.add(browser_session_id)
            provisioned = True
            logger.info("Browser session %s provisioned by %s", browser_session_id, self.provider_name)

        try:
            data = await self.run_command(browser_session_id, command)
        except (Exception, asyncio.CancelledError):
            if provisioned:
                await self._discard_session(browser_session_id)
            raise

        return normalize_browser_action(data, browser_session_id, action)

    @staticmethod
    def _build_command(action: str, params: Mapping[str, Any], context: str) -> dict:
        if action == "navigate":
            return {"type": "navigate", "url": require_str(params, "url", context)}
        if action == "click":
            return {"type": "click", "selector": require_str(params, "selector", context)}
        if action == "type":
            return {
                "type": "type",
                "selector": require_str(params, "selector", context),
                "text": require_str(params, "text", context),
            }
        if action == "screenshot":
            return {"type": "screenshot", "fullPage": bool(params.get("fullPage", False))}
        if action == "extract":
            selector = require_str(params, "selector", context)
            return {"type": "evaluate", "script": _EXTRACT_SCRIPT.format(selector=json.dumps(selector))}
        raise InvalidEnvelope(f"Unsupported browser action: {action}")

    async def _discard_session(self, browser_session_id: str) -> None:
        self._sessions.discard(browser_session_id)
        try:
            await asyncio.shield(self.release_session(browser_session_id))
        except Exception as e:
            logger.warning("Failed to release browser session %s: %s", browser_session_id, e)

    @abstractmethod
    async def create_session(self) -> str: ...

    @abstractmethod
    async def run_command(self, browser_session_id: str, command: dict) -> Any: ...

    @abstractmethod
    async def release_session(self, browser_session_id: str) -> None: ...

    @abstractmethod
    async def scrape(self, url: str, params: Mapping[str, Any]) -> Any: ...


# ---------------------------------------------------------------------------
# Browserbase (remote-managed)
# ---------------------------------------------------------------------------


class BrowserbaseAdapter(BrowserAdapter):
    provider_name = "browserbase"
    base_url = "https://www.browserbase.com/v1"
    api_key_setting = "browserbase_api_key"
    scrape_url = "https://api.scrapybara.com/scrape"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport=transport)
        self.project_id = settings.browserbase_project_id
        self.scrapybara_api_key = settings.scrapybara_api_key

    def _auth_headers(self) -> dict[str, str]:
        return {"X-BB-API-Key": self.api_key}

    async def create_session(self) -> str:
        data = await self._request(
            "POST",
            "/sessions",
            json={"projectId": self.project_id, "browserSettings": {"viewport": _VIEWPORT}},
        )
        return str(data["id"])

    async def run_command(self, browser_session_id: str, command: dict) -> Any:
        return await self._request("POST", f"/sessions/{browser_session_id}/actions", json=command)

    async def release_session(self, browser_session_id: str) -> None:
        await self._request(
            "POST",
            f"/sessions/{browser_session_id}",
            json={"projectId": self.project_id, "status": "REQUEST_RELEASE"},
        )

    async def scrape(self, url: str, params: Mapping[str, Any]) -> Any:
        if not self.scrapybara_api_key:
            raise AdapterUnavailable("SCRAPYBARA_API_KEY is not configured for browser.scrape")
        return await self._request(
            "POST",
            self.scrape_url,
            json={
                "url": url,
                "wait_for": params.get("selector"),
                "extract_rules": params.get("extractRules"),
            },
            headers={"Authorization": f"Bearer {self.scrapybara_api_key}"},
            authenticated=False,
        )


# ---------------------------------------------------------------------------
# Steel (self-hosted)
# ---------------------------------------------------------------------------


class SteelBrowserAdapter(BrowserAdapter):
    provider_name = "steel"
    endpoint_class = EndpointClass.SELF_HOSTED
    base_url_setting = "steel_base_url"
    requires_api_key = False

    async def create_session(self) -> str:
        data = await self._request("POST", "/sessions", json={"dimensions": _VIEWPORT})
        return str(data["id"])

    async def run_command(self, browser_session_id: str, command: dict) -> Any:
        return await self._request("POST", f"/sessions/{browser_session_id}/actions", json=command)

    async def release_session(self, browser_session_id: str) -> None:
        await self._request("POST", f"/sessions/{browser_session_id}/release")

    async def scrape(self, url: str, params: Mapping[str, Any]) -> Any:
        return await self._request("POST", "/scrape", json={"url": url, "format": ["html", "markdown"]})
