"""Chat completion adapters.

Conversation continuation is keyed by the envelope's session id: the last
messages of each session are kept in memory and replayed on the next ``send``.
A turn is appended to the history only after the provider answered, so a
retried ``send`` never duplicates it. Sends on the same session are
serialized, and at most ``CHAT_MAX_SESSIONS`` conversations are kept per
adapter, least recently used evicted first.

Vendor-specific behaviors:
  - OpenAI-compatible: OpenAI, DeepSeek, Groq, Perplexity (native citations), Ollama (self-hosted)
  - Anthropic: Messages API, system prompt as a top-level field
  - Gemini: generateContent, finishReason SAFETY → [CENSORED_BY_VENDOR]
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.config import Settings
from app.gateway.adapters.base import ProviderAdapter, optional_float, optional_int, require_str
from app.gateway.normalizer import normalize_anthropic_chat, normalize_gemini_chat, normalize_openai_chat
from app.gateway.types import EndpointClass, ResourceKind

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10  # Messages kept per conversation


@dataclass
class _Conversation:
    messages: list[dict[str, str]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ChatAdapter(ProviderAdapter):
    """Shared conversation handling; subclasses implement ``complete``."""

    resource = ResourceKind.CHAT
    actions = {"send": True, "history": True, "clear": False}
    default_model: str = ""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport=transport)
        self.max_sessions = max(1, settings.chat_max_sessions)
        self._conversations: OrderedDict[str, _Conversation] = OrderedDict()

    @property
    def session_count(self) -> int:
        return len(self._conversations)

    @classmethod
    def validate(cls, action: str, params: Mapping[str, Any]) -> dict[str, Any]:
        if action != "send":
            return {}
        context = f"chat.{action}"
        return {
            "message": require_str(params, "message", context),
            "model": params.get("model") or cls.default_model,
            "maxTokens": optional_int(params, "maxTokens", 4096, context),
            "temperature": optional_float(params, "temperature", 0.7, context),
            "system": params.get("system") or "",
        }

    async def run(self, action: str, arguments: Mapping[str, Any], *, session_id: str | None = None) -> dict:
        if action == "history":
            conversation = self._conversations.get(session_id or "")
            return {"sessionId": session_id, "messages": list(conversation.messages) if conversation else []}

        if action == "clear":
            conversation = self._conversations.get(session_id or "")
            if conversation is None:
                return {"sessionId": session_id, "cleared": 0}
            async with conversation.lock:
                if self._conversations.get(session_id) is conversation:
                    del self._conversations[session_id]
            return {"sessionId": session_id, "cleared": len(conversation.messages)}

        user_turn = {"role": "user", "content": arguments["message"]}
        if not session_id:
            payload = await self._complete(arguments, [user_turn])
            payload["sessionId"] = None
            return payload

        conversation = self._conversation(session_id)
        async with conversation.lock:
            messages = [*conversation.messages, user_turn]
            payload = await self._complete(arguments, messages)
            turn = [*messages, {"role": "assistant", "content": payload["text"]}]
            conversation.messages = turn[-HISTORY_LIMIT:]

        payload["sessionId"] = session_id
        return payload

    def _conversation(self, session_id: str) -> _Conversation:
        """Get or create the conversation and mark it most recently used."""
        conversation = self._conversations.get(session_id)
        if conversation is not None:
            self._conversations.move_to_end(session_id)
            return conversation

        conversation = self._conversations[session_id] = _Conversation()
        while len(self._conversations) > self.max_sessions:
            evicted, _ = self._conversations.popitem(last=False)
            logger.debug("%s evicted conversation %s", self.provider_name, evicted)
        return conversation

    async def _complete(self, arguments: Mapping[str, Any], messages: list[dict[str, str]]) -> dict:
        return await self.complete(
            messages,
            model=arguments["model"],
            system=arguments["system"],
            max_tokens=arguments["maxTokens"],
            temperature=arguments["temperature"],
        )

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        system: str,
        max_tokens: int,
        temperature: float,
    ) -> dict:
        """Send the conversation to the provider and return the normalized chat payload."""
        ...


# ---------------------------------------------------------------------------
# OpenAI-compatible providers
# ---------------------------------------------------------------------------


class OpenAICompatibleChatAdapter(ChatAdapter):
    """OpenAI Chat Completions protocol."""

    completions_path = "/chat/completions"

    async def complete(self, messages, *, model, system, max_tokens, temperature) -> dict:
        body_messages = [{"role": "system", "content": system}] if system else []
        body_messages.extend(messages)
        data = await self._request(
            "POST",
            self.completions_path,
            json={
                "model": model,
                "messages": body_messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "stream": False,
            },
        )
        return normalize_openai_chat(data, default_model=model)


class OpenAIChatAdapter(OpenAICompatibleChatAdapter):
    provider_name = "openai"
    base_url = "https://api.openai.com/v1"
    api_key_setting = "openai_api_key"
    default_model = "gpt-4o-mini"


class DeepSeekChatAdapter(OpenAICompatibleChatAdapter):
    """DeepSeek with extended timeout."""

    provider_name = "deepseek"
    base_url = "https://api.deepseek.com/v1"
    api_key_setting = "deepseek_api_key"
    default_model = "deepseek-chat"
    timeout_seconds = 120.0


class GroqChatAdapter(OpenAICompatibleChatAdapter):
    provider_name = "groq"
    base_url = "https://api.groq.com/openai/v1"
    api_key_setting = "groq_api_key"
    default_model = "llama-3.1-8b-instant"


class PerplexityChatAdapter(OpenAICompatibleChatAdapter):
    """Perplexity with native citation extraction."""

    provider_name = "perplexity"
    base_url = "https://api.perplexity.ai"
    api_key_setting = "perplexity_api_key"
    default_model = "sonar"
    timeout_seconds = 90.0


class OllamaChatAdapter(OpenAICompatibleChatAdapter):
    """Local Ollama server through its OpenAI-compatible endpoint."""

    provider_name = "ollama"
    endpoint_class = EndpointClass.SELF_HOSTED
    base_url_setting = "ollama_base_url"
    requires_api_key = False
    default_model = "llama3.1"
    timeout_seconds = 120.0


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicChatAdapter(ChatAdapter):
    """Anthropic Messages API."""

    provider_name = "anthropic"
    base_url = "https://api.anthropic.com"
    api_key_setting = "anthropic_api_key"
    default_model = "claude-opus-4-20250514"
    api_version = "2023-06-01"

    def _auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": self.api_version}

    async def complete(self, messages, *, model, system, max_tokens, temperature) -> dict:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [
                {"role": "assistant" if m["role"] == "assistant" else "user", "content": m["content"]}
                for m in messages
            ],
        }
        if system:
            body["system"] = system
        data = await self._request("POST", "/v1/messages", json=body)
        return normalize_anthropic_chat(data, default_model=model)


# ---------------------------------------------------------------------------
# Gemini (Google AI)
# ---------------------------------------------------------------------------


class GeminiChatAdapter(ChatAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    provider_name = "google"
    base_url = "https://generativelanguage.googleapis.com"
    api_key_setting = "google_api_key"
    default_model = "gemini-2.0-flash"

    def _auth_headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    async def complete(self, messages, *, model, system, max_tokens, temperature) -> dict:
        body: dict[str, Any] = {
            "contents": [
                {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
                for m in messages
            ],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        # System instruction (separate from contents in Gemini API)
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        data = await self._request("POST", f"/v1beta/models/{model}:generateContent", json=body)
        return normalize_gemini_chat(data, model=model)
