"""Web search adapters — stateless query → results."""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

from app.gateway.adapters.base import ProviderAdapter, optional_int, require_str
from app.gateway.normalizer import (
    normalize_exa_search,
    normalize_jina_search,
    normalize_perplexity_search,
    normalize_searxng_search,
    normalize_serpapi_search,
    normalize_tavily_search,
)
from app.gateway.types import EndpointClass, ResourceKind


class SearchAdapter(ProviderAdapter):
    resource = ResourceKind.SEARCH
    actions = {"web": True}

    @classmethod
    def validate(cls, action: str, params: Mapping[str, Any]) -> dict[str, Any]:
        context = f"search.{action}"
        return {
            **params,
            "query": require_str(params, "query", context),
            "maxResults": optional_int(params, "maxResults", 10, context),
        }

    async def run(self, action: str, arguments: Mapping[str, Any], *, session_id: str | None = None) -> dict:
        return await self.search(arguments["query"], arguments["maxResults"], arguments)

    @abstractmethod
    async def search(self, query: str, max_results: int, params: Mapping[str, Any]) -> dict: ...


class TavilySearchAdapter(SearchAdapter):
    provider_name = "tavily"
    base_url = "https://api.tavily.com"
    api_key_setting = "tavily_api_key"

    async def search(self, query, max_results, params) -> dict:
        data = await self._request(
            "POST",
            "/search",
            json={
                "query": query,
                "search_depth": params.get("depth", "advanced"),
                "include_images": bool(params.get("includeImages", False)),
                "include_answer": True,
                "max_results": max_results,
            },
        )
        return normalize_tavily_search(data, query)


class PerplexitySearchAdapter(SearchAdapter):
    """Online answer model; citations become the result list."""

    provider_name = "perplexity"
    base_url = "https://api.perplexity.ai"
    api_key_setting = "perplexity_api_key"
    timeout_seconds = 90.0

    async def search(self, query, max_results, params) -> dict:
        data = await self._request(
            "POST",
            "/chat/completions",
            json={
                "model": params.get("model", "sonar"),
                "messages": [{"role": "user", "content": query}],
                "stream": False,
            },
        )
        payload = normalize_perplexity_search(data, query)
        payload["results"] = payload["results"][:max_results]
        return payload


class ExaSearchAdapter(SearchAdapter):
    provider_name = "exa"
    base_url = "https://api.exa.ai"
    api_key_setting = "exa_api_key"

    def _auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key}

    async def search(self, query, max_results, params) -> dict:
        data = await self._request(
            "POST",
            "/search",
            json={"query": query, "numResults": max_results, "useAutoprompt": True},
        )
        return normalize_exa_search(data, query)


class SerpApiSearchAdapter(SearchAdapter):
    """Google results through SerpAPI. The key travels as a query parameter."""

    provider_name = "serpapi"
    base_url = "https://serpapi.com"
    api_key_setting = "serpapi_api_key"

    def _auth_headers(self) -> dict[str, str]:
        return {}

    async def search(self, query, max_results, params) -> dict:
        data = await self._request(
            "GET",
            "/search",
            params={
                "api_key": self.api_key,
                "q": query,
                "engine": params.get("engine", "google"),
                "num": str(max_results),
            },
        )
        return normalize_serpapi_search(data, query)


class JinaSearchAdapter(SearchAdapter):
    provider_name = "jina"
    base_url = "https://s.jina.ai"
    api_key_setting = "jina_api_key"

    async def search(self, query, max_results, params) -> dict:
        data = await self._request("GET", f"/{quote(query, safe='')}", headers={"Accept": "application/json"})
        payload = normalize_jina_search(data, query)
        payload["results"] = payload["results"][:max_results]
        return payload


class SearxngSearchAdapter(SearchAdapter):
    """Self-hosted SearXNG metasearch instance (JSON output format must be enabled)."""

    provider_name = "searxng"
    endpoint_class = EndpointClass.SELF_HOSTED
    base_url_setting = "searxng_base_url"
    requires_api_key = False

    async def search(self, query, max_results, params) -> dict:
        data = await self._request("GET", "/search", params={"q": query, "format": "json"})
        payload = normalize_searxng_search(data, query)
        payload["results"] = payload["results"][:max_results]
        return payload
