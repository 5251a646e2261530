"""Long-term memory adapters backed by Mem0.

Every action is scoped by ``userId``. The managed platform and the
self-hosted REST server expose the same operations under different paths.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from app.gateway.adapters.base import ProviderAdapter, optional_int, require_segment, require_str
from app.gateway.errors import InvalidEnvelope
from app.gateway.normalizer import normalize_mem0
from app.gateway.types import EndpointClass, ResourceKind


class Mem0Adapter(ProviderAdapter):
    resource = ResourceKind.MEMORY
    provider_name = "mem0"
    base_url = "https://api.mem0.ai"
    api_key_setting = "mem0_api_key"
    actions = {
        "add": False,
        "search": True,
        "get": True,
        "update": False,
        "delete": False,
        "list": True,
    }

    memories_path = "/v1/memories/"
    search_path = "/v1/memories/search/"

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_key}"}

    def _memory_path(self, memory_id: str) -> str:
        return f"{self.memories_path}{memory_id}/"

    @classmethod
    def validate(cls, action: str, params: Mapping[str, Any]) -> dict[str, Any]:
        context = f"memory.{action}"
        arguments: dict[str, Any] = {"userId": require_str(params, "userId", context)}

        if action == "add":
            arguments.update(cls._add_arguments(params))
        elif action == "search":
            arguments["query"] = require_str(params, "query", context)
            arguments["limit"] = optional_int(params, "limit", 10, context)
        elif action in ("get", "update", "delete"):
            arguments["memoryId"] = require_segment(params, "memoryId", context)
            if action == "update":
                arguments["text"] = require_str(params, "text", context)
        return arguments

    async def run(self, action: str, arguments: Mapping[str, Any], *, session_id: str | None = None) -> dict:
        user_id = arguments["userId"]

        if action == "add":
            data = await self._request(
                "POST", self.memories_path, json=self._add_body(arguments, user_id, session_id)
            )
        elif action == "search":
            data = await self._request(
                "POST",
                self.search_path,
                json={"query": arguments["query"], "user_id": user_id, "limit": arguments["limit"]},
            )
        elif action == "list":
            data = await self._request("GET", self.memories_path, params={"user_id": user_id})
        elif action == "get":
            data = await self._request("GET", self._memory_path(arguments["memoryId"]))
        elif action == "update":
            data = await self._request(
                "PUT", self._memory_path(arguments["memoryId"]), json={"text": arguments["text"]}
            )
        else:
            data = await self._request("DELETE", self._memory_path(arguments["memoryId"]))

        return normalize_mem0(data, action, user_id)

    @staticmethod
    def _add_arguments(params: Mapping[str, Any]) -> dict[str, Any]:
        messages = params.get("messages")
        if messages is None and isinstance(params.get("message"), str):
            messages = [{"role": "user", "content": params["message"]}]
        if not isinstance(messages, list) or not messages:
            raise InvalidEnvelope("parameters.messages (or parameters.message) is required for memory.add")

        metadata = params.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise InvalidEnvelope("parameters.metadata must be an object")
        return {"messages": messages, "metadata": dict(metadata)}

    @staticmethod
    def _add_body(arguments: Mapping[str, Any], user_id: str, session_id: str | None) -> dict:
        return {
            "messages": arguments["messages"],
            "user_id": user_id,
            "metadata": {
                **arguments["metadata"],
                "session_id": session_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }


class SelfHostedMem0Adapter(Mem0Adapter):
    """Mem0 open-source REST server."""

    endpoint_class = EndpointClass.SELF_HOSTED
    base_url_setting = "mem0_self_hosted_url"
    requires_api_key = False

    memories_path = "/memories"
    search_path = "/search"

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _memory_path(self, memory_id: str) -> str:
        return f"{self.memories_path}/{memory_id}"
