"""Tests for provider adapters and response normalization.

Adapters talk to an httpx.MockTransport; no network access is needed.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

from app.gateway.adapters.base import ProviderAdapter
from app.gateway.adapters.browser import BrowserbaseAdapter, SteelBrowserAdapter
from app.gateway.adapters.chat import (
    HISTORY_LIMIT,
    AnthropicChatAdapter,
    GeminiChatAdapter,
    OllamaChatAdapter,
    OpenAIChatAdapter,
)
from app.gateway.adapters.memory import Mem0Adapter, SelfHostedMem0Adapter
from app.gateway.adapters.runtime import E2BRuntimeAdapter, LocalRuntimeAdapter, parse_seed_files
from app.gateway.adapters.search import (
    ExaSearchAdapter,
    JinaSearchAdapter,
    PerplexitySearchAdapter,
    SearxngSearchAdapter,
    SerpApiSearchAdapter,
    TavilySearchAdapter,
)
from app.gateway.errors import AdapterConfigError, AdapterUnavailable, InvalidEnvelope, ProviderCallError
from app.gateway.normalizer import (
    CENSORED_MARKER,
    normalize_anthropic_chat,
    normalize_browser_action,
    normalize_gemini_chat,
    normalize_mem0,
    normalize_openai_chat,
)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
BB_SESSIONS = "https://www.browserbase.com/v1/sessions"
E2B_SANDBOXES = "https://api.e2b.dev/sandboxes"
E2B_ENVD = "https://49983-sbx-1.e2b.app"
MEM0_MEMORIES = "https://api.mem0.ai/v1/memories/"


def openai_reply(text: str, **extra) -> dict:
    return {
        "choices": [{"message": {"content": text}, "finish_reason": "stop"}],
        "model": "gpt-4o-mini",
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        **extra,
    }


@pytest.fixture
async def build(provider, settings_factory):
    """Construct adapters against the mock provider and close them afterwards."""
    adapters: list[ProviderAdapter] = []

    def _build(adapter_cls, transport=None, **overrides):
        adapter = adapter_cls(settings_factory(**overrides), transport=transport or provider.transport)
        adapters.append(adapter)
        return adapter

    yield _build

    for adapter in adapters:
        await adapter.aclose()


# ==========================================================================
# Test: Base adapter HTTP handling
# ==========================================================================


class TestBaseAdapter:
    def test_missing_credential_raises_config_error(self, settings_factory):
        with pytest.raises(AdapterConfigError, match="OPENAI_API_KEY"):
            OpenAIChatAdapter(settings_factory(openai_api_key=""))

    @pytest.mark.asyncio
    async def test_self_hosted_needs_no_key(self, build):
        adapter = build(OllamaChatAdapter)
        assert adapter.api_key == ""
        assert adapter.base_url == "http://localhost:11434/v1"

    def test_action_metadata(self):
        assert OpenAIChatAdapter.supports_action("send")
        assert not OpenAIChatAdapter.supports_action("navigate")
        assert BrowserbaseAdapter.is_idempotent("screenshot")
        assert not BrowserbaseAdapter.is_idempotent("click")
        assert E2BRuntimeAdapter.identity().key == "runtime:e2b:remote-managed"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, build, provider):
        provider.add("POST", OPENAI_URL, exc=httpx.ReadTimeout("slow"))
        adapter = build(OpenAIChatAdapter)
        with pytest.raises(ProviderCallError) as exc_info:
            await adapter.execute("send", {"message": "hi"})
        assert exc_info.value.transient is True
        assert exc_info.value.timed_out is True

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, build, provider):
        provider.add("POST", OPENAI_URL, exc=httpx.ConnectError("refused"))
        adapter = build(OpenAIChatAdapter)
        with pytest.raises(ProviderCallError) as exc_info:
            await adapter.execute("send", {"message": "hi"})
        assert exc_info.value.transient is True
        assert "ConnectError" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,transient", [(429, True), (500, True), (503, True), (400, False), (401, False)])
    async def test_http_status_classification(self, build, provider, status, transient):
        provider.add("POST", OPENAI_URL, status=status, json={"error": "nope"})
        adapter = build(OpenAIChatAdapter)
        with pytest.raises(ProviderCallError) as exc_info:
            await adapter.execute("send", {"message": "hi"})
        assert exc_info.value.status_code == status
        assert exc_info.value.transient is transient

    @pytest.mark.asyncio
    async def test_error_message_never_contains_credential(self, build, provider):
        provider.add("POST", OPENAI_URL, status=401, json={"error": "bad key sk-test-openai"})
        adapter = build(OpenAIChatAdapter)
        with pytest.raises(ProviderCallError) as exc_info:
            await adapter.execute("send", {"message": "hi"})
        assert "sk-test-openai" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_body_wrapped_as_text(self, build, provider):
        provider.add("GET", "https://s.jina.ai/fastapi", text="plain results")
        adapter = build(JinaSearchAdapter)
        result = await adapter.execute("web", {"query": "fastapi"})
        assert result["results"] == []


# ==========================================================================
# Test: Chat adapters
# ==========================================================================


class TestChatAdapters:
    @pytest.mark.asyncio
    async def test_openai_send(self, build, provider):
        provider.add("POST", OPENAI_URL, json=openai_reply("Hello there"))
        adapter = build(OpenAIChatAdapter)

        result = await adapter.execute("send", {"message": "hi", "system": "be brief"}, session_id="s-1")

        assert result["text"] == "Hello there"
        assert result["sessionId"] == "s-1"
        assert result["usage"] == {"inputTokens": 10, "outputTokens": 5, "totalTokens": 15}

        request = provider.calls[0]
        assert request.headers["Authorization"] == "Bearer sk-test-openai"
        body = provider.body(request)
        assert body["messages"][0] == {"role": "system", "content": "be brief"}
        assert body["messages"][-1] == {"role": "user", "content": "hi"}
        assert body["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_conversation_replayed_on_next_send(self, build, provider):
        provider.add("POST", OPENAI_URL, json=openai_reply("first answer"))
        adapter = build(OpenAIChatAdapter)

        await adapter.execute("send", {"message": "one"}, session_id="s-1")
        await adapter.execute("send", {"message": "two"}, session_id="s-1")

        messages = provider.body(provider.calls[1])["messages"]
        assert [m["content"] for m in messages] == ["one", "first answer", "two"]

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_history(self, build, provider):
        provider.add("POST", OPENAI_URL, json=openai_reply("ok"))
        adapter = build(OpenAIChatAdapter)

        await adapter.execute("send", {"message": "one"}, session_id="s-1")
        await adapter.execute("send", {"message": "two"}, session_id="s-2")

        assert len(provider.body(provider.calls[1])["messages"]) == 1

    @pytest.mark.asyncio
    async def test_history_capped(self, build, provider):
        provider.add("POST", OPENAI_URL, json=openai_reply("ok"))
        adapter = build(OpenAIChatAdapter)

        for i in range(8):
            await adapter.execute("send", {"message": f"m{i}"}, session_id="s-1")

        history = await adapter.execute("history", {}, session_id="s-1")
        assert len(history["messages"]) == HISTORY_LIMIT
        assert history["messages"][-1] == {"role": "assistant", "content": "ok"}
        assert history["messages"][-2] == {"role": "user", "content": "m7"}

    @pytest.mark.asyncio
    async def test_failed_send_leaves_history_untouched(self, build, provider):
        provider.add("POST", OPENAI_URL, status=503)
        provider.add("POST", OPENAI_URL, json=openai_reply("recovered"))
        adapter = build(OpenAIChatAdapter)

        with pytest.raises(ProviderCallError):
            await adapter.execute("send", {"message": "hi"}, session_id="s-1")
        history = await adapter.execute("history", {}, session_id="s-1")
        assert history["messages"] == []

        await adapter.execute("send", {"message": "hi"}, session_id="s-1")
        history = await adapter.execute("history", {}, session_id="s-1")
        assert len(history["messages"]) == 2

    @pytest.mark.asyncio
    async def test_clear(self, build, provider):
        provider.add("POST", OPENAI_URL, json=openai_reply("ok"))
        adapter = build(OpenAIChatAdapter)
        await adapter.execute("send", {"message": "hi"}, session_id="s-1")

        result = await adapter.execute("clear", {}, session_id="s-1")
        assert result == {"sessionId": "s-1", "cleared": 2}

    @pytest.mark.asyncio
    async def test_missing_message(self, build):
        adapter = build(OpenAIChatAdapter)
        with pytest.raises(InvalidEnvelope, match="parameters.message"):
            await adapter.execute("send", {})

    @pytest.mark.asyncio
    async def test_invalid_max_tokens(self, build):
        adapter = build(OpenAIChatAdapter)
        with pytest.raises(InvalidEnvelope, match="maxTokens"):
            await adapter.execute("send", {"message": "hi", "maxTokens": "lots"})

    def test_validate_fills_defaults_without_an_instance(self):
        assert OpenAIChatAdapter.validate("send", {"message": "hi"}) == {
            "message": "hi",
            "model": "gpt-4o-mini",
            "maxTokens": 4096,
            "temperature": 0.7,
            "system": "",
        }
        assert OpenAIChatAdapter.validate("history", {}) == {}

    @pytest.mark.asyncio
    async def test_concurrent_sends_on_one_session_keep_both_turns(self, build):
        seen: list[list[str]] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            messages = [m["content"] for m in json.loads(request.content)["messages"]]
            seen.append(messages)
            await asyncio.sleep(0.01)
            return httpx.Response(200, json=openai_reply(f"re: {messages[-1]}"))

        adapter = build(OpenAIChatAdapter, transport=httpx.MockTransport(handler))

        await asyncio.gather(
            adapter.execute("send", {"message": "one"}, session_id="s-1"),
            adapter.execute("send", {"message": "two"}, session_id="s-1"),
        )

        history = await adapter.execute("history", {}, session_id="s-1")
        assert len(history["messages"]) == 4
        assert seen[1][:2] == seen[0] + [f"re: {seen[0][-1]}"]

    @pytest.mark.asyncio
    async def test_sessions_capped_least_recently_used_first(self, build, provider):
        provider.add("POST", OPENAI_URL, json=openai_reply("ok"))
        adapter = build(OpenAIChatAdapter, chat_max_sessions=2)

        await adapter.execute("send", {"message": "a"}, session_id="s-1")
        await adapter.execute("send", {"message": "b"}, session_id="s-2")
        await adapter.execute("send", {"message": "a again"}, session_id="s-1")
        await adapter.execute("send", {"message": "c"}, session_id="s-3")

        assert adapter.session_count == 2
        assert (await adapter.execute("history", {}, session_id="s-2"))["messages"] == []
        assert len((await adapter.execute("history", {}, session_id="s-1"))["messages"]) == 4

    @pytest.mark.asyncio
    async def test_clear_frees_the_session(self, build, provider):
        provider.add("POST", OPENAI_URL, json=openai_reply("ok"))
        adapter = build(OpenAIChatAdapter)
        await adapter.execute("send", {"message": "hi"}, session_id="s-1")

        await adapter.execute("clear", {}, session_id="s-1")

        assert adapter.session_count == 0

    @pytest.mark.asyncio
    async def test_anthropic(self, build, provider):
        provider.add(
            "POST",
            "https://api.anthropic.com/v1/messages",
            json={
                "content": [{"type": "text", "text": "Bonjour"}],
                "model": "claude-test",
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 7, "output_tokens": 3},
            },
        )
        adapter = build(AnthropicChatAdapter)

        result = await adapter.execute("send", {"message": "hi", "system": "french only"})

        assert result["text"] == "Bonjour"
        assert result["finishReason"] == "end_turn"
        assert result["usage"]["totalTokens"] == 10

        request = provider.calls[0]
        assert request.headers["x-api-key"] == "sk-ant-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in request.headers
        assert provider.body(request)["system"] == "french only"

    @pytest.mark.asyncio
    async def test_gemini_safety_block(self, build, provider):
        url = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent"
        provider.add("POST", url, json={"candidates": [{"finishReason": "SAFETY", "content": {"parts": []}}]})
        adapter = build(GeminiChatAdapter)

        result = await adapter.execute("send", {"message": "something spicy"})

        assert result["censored"] is True
        assert result["text"] == CENSORED_MARKER
        assert result["citedUrls"] == []
        assert provider.calls[0].headers["x-goog-api-key"] == "test-google-key"

    @pytest.mark.asyncio
    async def test_gemini_roles_and_system_instruction(self, build, provider):
        url = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent"
        provider.add(
            "POST",
            url,
            json={"candidates": [{"finishReason": "STOP", "content": {"parts": [{"text": "fine"}]}}]},
        )
        adapter = build(GeminiChatAdapter)

        await adapter.execute("send", {"message": "one"}, session_id="s-1")
        await adapter.execute("send", {"message": "two", "system": "terse"}, session_id="s-1")

        body = provider.body(provider.calls[1])
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["systemInstruction"] == {"parts": [{"text": "terse"}]}


# ==========================================================================
# Test: Search adapters
# ==========================================================================


class TestSearchAdapters:
    @pytest.mark.asyncio
    async def test_tavily(self, build, provider):
        provider.add(
            "POST",
            "https://api.tavily.com/search",
            json={
                "answer": "FastAPI is a web framework",
                "results": [{"title": "FastAPI", "url": "https://fastapi.tiangolo.com", "content": "docs"}],
            },
        )
        adapter = build(TavilySearchAdapter)

        result = await adapter.execute("web", {"query": "fastapi", "maxResults": 3})

        assert result["provider"] == "tavily"
        assert result["answer"] == "FastAPI is a web framework"
        assert result["results"] == [{"title": "FastAPI", "url": "https://fastapi.tiangolo.com", "snippet": "docs"}]
        assert provider.body(provider.calls[0])["max_results"] == 3

    @pytest.mark.asyncio
    async def test_exa_uses_key_header(self, build, provider):
        provider.add(
            "POST",
            "https://api.exa.ai/search",
            json={"results": [{"title": "t", "url": "https://a.example", "text": "body"}]},
        )
        adapter = build(ExaSearchAdapter)

        result = await adapter.execute("web", {"query": "q"})

        assert result["results"][0]["snippet"] == "body"
        assert provider.calls[0].headers["x-api-key"] == "exa-test"

    @pytest.mark.asyncio
    async def test_serpapi_key_in_query(self, build, provider):
        provider.add(
            "GET",
            "https://serpapi.com/search",
            json={
                "organic_results": [{"title": "r", "link": "https://r.example", "snippet": "s"}],
                "answer_box": {"answer": "42"},
            },
        )
        adapter = build(SerpApiSearchAdapter)

        result = await adapter.execute("web", {"query": "meaning of life", "maxResults": 5})

        request = provider.calls[0]
        assert request.url.params["api_key"] == "serp-test"
        assert request.url.params["num"] == "5"
        assert "Authorization" not in request.headers
        assert result["answer"] == "42"
        assert result["results"][0]["url"] == "https://r.example"

    @pytest.mark.asyncio
    async def test_perplexity_citations_become_results(self, build, provider):
        provider.add(
            "POST",
            "https://api.perplexity.ai/chat/completions",
            json=openai_reply("See sources", citations=["https://a.example", "https://b.example", "https://c.example"]),
        )
        adapter = build(PerplexitySearchAdapter)

        result = await adapter.execute("web", {"query": "q", "maxResults": 2})

        assert result["answer"] == "See sources"
        assert [r["url"] for r in result["results"]] == ["https://a.example", "https://b.example"]

    @pytest.mark.asyncio
    async def test_jina(self, build, provider):
        provider.add(
            "GET",
            "https://s.jina.ai/asyncio",
            json={"data": [{"title": "asyncio", "url": "https://docs.python.org", "description": "stdlib"}]},
        )
        adapter = build(JinaSearchAdapter)

        result = await adapter.execute("web", {"query": "asyncio"})

        assert result["results"][0]["snippet"] == "stdlib"
        assert provider.calls[0].headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_searxng_self_hosted(self, build, provider):
        provider.add(
            "GET",
            "http://localhost:8080/search",
            json={"results": [{"title": f"r{i}", "url": f"https://r{i}.example"} for i in range(5)]},
        )
        adapter = build(SearxngSearchAdapter)

        result = await adapter.execute("web", {"query": "q", "maxResults": 2})

        assert len(result["results"]) == 2
        assert provider.calls[0].url.params["format"] == "json"

    @pytest.mark.asyncio
    async def test_missing_query(self, build):
        adapter = build(TavilySearchAdapter)
        with pytest.raises(InvalidEnvelope, match="parameters.query"):
            await adapter.execute("web", {"query": "   "})

    @pytest.mark.asyncio
    async def test_invalid_max_results(self, build):
        adapter = build(TavilySearchAdapter)
        with pytest.raises(InvalidEnvelope, match="maxResults"):
            await adapter.execute("web", {"query": "q", "maxResults": 0})


# ==========================================================================
# Test: Browser adapters
# ==========================================================================


class TestBrowserAdapters:
    @pytest.mark.asyncio
    async def test_navigate_provisions_session(self, build, provider):
        provider.add("POST", BB_SESSIONS, json={"id": "sess-1"})
        provider.add("POST", f"{BB_SESSIONS}/sess-1/actions", json={"result": {"title": "Example"}})
        adapter = build(BrowserbaseAdapter)

        result = await adapter.execute("navigate", {"url": "https://example.com"})

        assert result == {"browserSessionId": "sess-1", "action": "navigate", "data": {"title": "Example"}}
        assert adapter.open_sessions == {"sess-1"}
        create = provider.calls_to("POST", BB_SESSIONS)[0]
        assert create.headers["X-BB-API-Key"] == "bb-test"
        assert provider.body(create)["projectId"] == "proj-1"
        action = provider.calls_to("POST", f"{BB_SESSIONS}/sess-1/actions")[0]
        assert provider.body(action) == {"type": "navigate", "url": "https://example.com"}

    @pytest.mark.asyncio
    async def test_session_reused_by_token(self, build, provider):
        provider.add("POST", BB_SESSIONS, json={"id": "sess-1"})
        provider.add("POST", f"{BB_SESSIONS}/sess-1/actions", json={"ok": True})
        adapter = build(BrowserbaseAdapter)

        first = await adapter.execute("navigate", {"url": "https://example.com"})
        await adapter.execute("click", {"selector": "#go", "browserSessionId": first["browserSessionId"]})

        assert len(provider.calls_to("POST", BB_SESSIONS)) == 1
        assert len(provider.calls_to("POST", f"{BB_SESSIONS}/sess-1/actions")) == 2

    @pytest.mark.asyncio
    async def test_session_reused_by_envelope_session(self, build, provider):
        provider.add("POST", BB_SESSIONS, json={"id": "sess-1"})
        provider.add("POST", f"{BB_SESSIONS}/sess-1/actions", json={"ok": True})
        adapter = build(BrowserbaseAdapter)

        await adapter.execute("navigate", {"url": "https://example.com"})
        result = await adapter.execute("screenshot", {}, session_id="sess-1")

        assert result["browserSessionId"] == "sess-1"
        assert len(provider.calls_to("POST", BB_SESSIONS)) == 1

    @pytest.mark.asyncio
    async def test_extract_quotes_selector(self, build, provider):
        provider.add("POST", f"{BB_SESSIONS}/sess-9/actions", json=[{"text": "a"}])
        adapter = build(BrowserbaseAdapter)

        await adapter.execute("extract", {"selector": "a[href='x']", "browserSessionId": "sess-9"})

        body = provider.body(provider.calls[0])
        assert body["type"] == "evaluate"
        assert "document.querySelectorAll(\"a[href='x']\")" in body["script"]

    @pytest.mark.asyncio
    async def test_close_releases_session(self, build, provider):
        provider.add("POST", BB_SESSIONS, json={"id": "sess-1"})
        provider.add("POST", f"{BB_SESSIONS}/sess-1/actions", json={})
        provider.add("POST", f"{BB_SESSIONS}/sess-1", json={})
        adapter = build(BrowserbaseAdapter)

        await adapter.execute("navigate", {"url": "https://example.com"})
        result = await adapter.execute("close", {"browserSessionId": "sess-1"})

        assert result == {"browserSessionId": "sess-1", "action": "close", "closed": True}
        assert adapter.open_sessions == set()
        release = provider.calls_to("POST", f"{BB_SESSIONS}/sess-1")[0]
        assert provider.body(release)["status"] == "REQUEST_RELEASE"

    @pytest.mark.asyncio
    async def test_close_requires_session(self, build):
        adapter = build(BrowserbaseAdapter)
        with pytest.raises(InvalidEnvelope, match="browserSessionId"):
            await adapter.execute("close", {})

    @pytest.mark.asyncio
    async def test_failed_first_action_releases_new_session(self, build, provider):
        provider.add("POST", BB_SESSIONS, json={"id": "sess-1"})
        provider.add("POST", f"{BB_SESSIONS}/sess-1/actions", status=500)
        provider.add("POST", f"{BB_SESSIONS}/sess-1", json={})
        adapter = build(BrowserbaseAdapter)

        with pytest.raises(ProviderCallError):
            await adapter.execute("navigate", {"url": "https://example.com"})

        assert adapter.open_sessions == set()
        assert len(provider.calls_to("POST", f"{BB_SESSIONS}/sess-1")) == 1

    @pytest.mark.asyncio
    async def test_failed_action_on_existing_session_keeps_it(self, build, provider):
        provider.add("POST", BB_SESSIONS, json={"id": "sess-1"})
        provider.add("POST", f"{BB_SESSIONS}/sess-1/actions", json={})
        provider.add("POST", f"{BB_SESSIONS}/sess-1/actions", status=500)
        adapter = build(BrowserbaseAdapter)

        await adapter.execute("navigate", {"url": "https://example.com"})
        with pytest.raises(ProviderCallError):
            await adapter.execute("click", {"selector": "#x", "browserSessionId": "sess-1"})

        assert adapter.open_sessions == {"sess-1"}
        assert provider.calls_to("POST", f"{BB_SESSIONS}/sess-1") == []

    @pytest.mark.asyncio
    async def test_scrape_uses_scrapybara(self, build, provider):
        provider.add("POST", "https://api.scrapybara.com/scrape", json={"html": "<p>hi</p>"})
        adapter = build(BrowserbaseAdapter)

        result = await adapter.execute("scrape", {"url": "https://example.com"})

        assert result == {"browserSessionId": None, "action": "scrape", "data": {"html": "<p>hi</p>"}}
        request = provider.calls[0]
        assert request.headers["Authorization"] == "Bearer scrapy-test"
        assert "X-BB-API-Key" not in request.headers
        assert provider.calls_to("POST", BB_SESSIONS) == []

    @pytest.mark.asyncio
    async def test_scrape_without_scrapybara_key(self, build):
        adapter = build(BrowserbaseAdapter, scrapybara_api_key="")
        with pytest.raises(AdapterUnavailable, match="SCRAPYBARA_API_KEY"):
            await adapter.execute("scrape", {"url": "https://example.com"})

    @pytest.mark.asyncio
    async def test_steel_self_hosted(self, build, provider):
        provider.add("POST", "http://localhost:3000/v1/sessions", json={"id": "st-1"})
        provider.add("POST", "http://localhost:3000/v1/sessions/st-1/actions", json={"ok": True})
        provider.add("POST", "http://localhost:3000/v1/sessions/st-1/release", json={})
        adapter = build(SteelBrowserAdapter)

        opened = await adapter.execute("type", {"selector": "#q", "text": "hello"})
        closed = await adapter.execute("close", {}, session_id=opened["browserSessionId"])

        assert opened["browserSessionId"] == "st-1"
        assert closed["closed"] is True
        assert "Authorization" not in provider.calls[0].headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("adapter_cls", [BrowserbaseAdapter, SteelBrowserAdapter])
    @pytest.mark.parametrize("action,extra", [("click", {"selector": "a"}), ("close", {})])
    @pytest.mark.parametrize("session_id", ["../projects/x", "sess-1/../../projects", "sess 1", "%2e%2e"])
    async def test_unsafe_session_id_rejected_before_any_request(
        self, build, provider, adapter_cls, action, extra, session_id
    ):
        adapter = build(adapter_cls)

        with pytest.raises(InvalidEnvelope, match="browserSessionId"):
            await adapter.execute(action, {**extra, "browserSessionId": session_id})

        assert provider.calls == []

    def test_validate_builds_command_without_an_instance(self):
        arguments = BrowserbaseAdapter.validate("type", {"selector": "#q", "text": "hi", "browserSessionId": "s-1"})
        assert arguments == {
            "browserSessionId": "s-1",
            "command": {"type": "type", "selector": "#q", "text": "hi"},
        }


# ==========================================================================
# Test: Runtime adapters
# ==========================================================================


class TestSeedFiles:
    def test_valid_files(self):
        files = parse_seed_files([{"path": "src/main.py", "content": "print(1)"}])
        assert files[0].path == "src/main.py"

    def test_none_means_no_files(self):
        assert parse_seed_files(None) == []

    @pytest.mark.parametrize("path", ["/etc/passwd", "../escape.txt", "a/../../b"])
    def test_rejects_paths_outside_sandbox(self, path):
        with pytest.raises(InvalidEnvelope):
            parse_seed_files([{"path": path, "content": ""}])

    def test_rejects_non_list(self):
        with pytest.raises(InvalidEnvelope):
            parse_seed_files({"path": "a", "content": ""})


class TestE2BRuntime:
    @pytest.mark.asyncio
    async def test_execute_lifecycle(self, build, provider):
        provider.add("POST", E2B_SANDBOXES, json={"sandboxID": "sbx-1"})
        provider.add("POST", f"{E2B_ENVD}/files", json={})
        provider.add("POST", f"{E2B_ENVD}/process", json={"stdout": "3\n", "stderr": "", "exitCode": 0})
        provider.add("DELETE", f"{E2B_SANDBOXES}/sbx-1", status=204)
        adapter = build(E2BRuntimeAdapter)

        result = await adapter.execute(
            "execute",
            {"code": "print(1 + 2)", "language": "python", "files": [{"path": "a.txt", "content": "x"}]},
        )

        assert result == {"output": "3\n", "error": "", "exitCode": 0}
        assert [(r.method, r.url.path) for r in provider.calls] == [
            ("POST", "/sandboxes"),
            ("POST", "/files"),
            ("POST", "/process"),
            ("DELETE", "/sandboxes/sbx-1"),
        ]
        assert provider.body(provider.calls[2]) == {"cmd": "python", "args": ["-c", "print(1 + 2)"]}
        assert provider.calls[0].headers["X-API-Key"] == "e2b-test"

    @pytest.mark.asyncio
    async def test_unknown_language_falls_back_to_bash(self, build, provider):
        provider.add("POST", E2B_SANDBOXES, json={"sandboxID": "sbx-1"})
        provider.add("POST", f"{E2B_ENVD}/process", json={"stdout": "", "stderr": "", "exitCode": 0})
        provider.add("DELETE", f"{E2B_SANDBOXES}/sbx-1", status=204)
        adapter = build(E2BRuntimeAdapter)

        await adapter.execute("execute", {"code": "echo hi", "language": "cobol"})

        process = provider.calls_to("POST", f"{E2B_ENVD}/process")[0]
        assert provider.body(process)["cmd"] == "bash"

    @pytest.mark.asyncio
    async def test_teardown_after_run_failure(self, build, provider):
        provider.add("POST", E2B_SANDBOXES, json={"sandboxID": "sbx-1"})
        provider.add("POST", f"{E2B_ENVD}/process", status=502)
        provider.add("DELETE", f"{E2B_SANDBOXES}/sbx-1", status=204)
        adapter = build(E2BRuntimeAdapter)

        with pytest.raises(ProviderCallError):
            await adapter.execute("execute", {"code": "echo hi"})

        assert len(provider.calls_to("DELETE", f"{E2B_SANDBOXES}/sbx-1")) == 1

    @pytest.mark.asyncio
    async def test_failed_teardown_keeps_original_outcome(self, build, provider):
        provider.add("POST", E2B_SANDBOXES, json={"sandboxID": "sbx-1"})
        provider.add("POST", f"{E2B_ENVD}/process", json={"stdout": "ok", "stderr": "", "exitCode": 0})
        provider.add("DELETE", f"{E2B_SANDBOXES}/sbx-1", status=500)
        adapter = build(E2BRuntimeAdapter)

        result = await adapter.execute("execute", {"code": "echo ok"})
        assert result["output"] == "ok"

    @pytest.mark.asyncio
    async def test_teardown_after_cancellation(self, build, provider):
        provider.add("POST", E2B_SANDBOXES, json={"sandboxID": "sbx-1"})
        provider.add("DELETE", f"{E2B_SANDBOXES}/sbx-1", status=204)
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/process":
                started.set()
                await asyncio.sleep(3600)
            return provider(request)

        adapter = build(E2BRuntimeAdapter, transport=httpx.MockTransport(handler))
        task = asyncio.create_task(adapter.execute("execute", {"code": "sleep 100"}))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(provider.calls_to("DELETE", f"{E2B_SANDBOXES}/sbx-1")) == 1

    @pytest.mark.asyncio
    async def test_missing_code(self, build, provider):
        adapter = build(E2BRuntimeAdapter)
        with pytest.raises(InvalidEnvelope, match="parameters.code"):
            await adapter.execute("execute", {"language": "python"})
        assert provider.calls == []


class TestLocalRuntime:
    @pytest.mark.asyncio
    async def test_runs_python_with_seed_files(self, build):
        adapter = build(LocalRuntimeAdapter)

        result = await adapter.execute(
            "execute",
            {
                "code": "print(open('data/in.txt').read().upper())",
                "language": "python",
                "files": [{"path": "data/in.txt", "content": "hello"}],
            },
        )

        assert result["output"].strip() == "HELLO"
        assert result["exitCode"] == 0

    @pytest.mark.asyncio
    async def test_python_uses_current_interpreter(self, build):
        adapter = build(LocalRuntimeAdapter)
        assert adapter.command_for("python", "pass")[0] == sys.executable

    @pytest.mark.asyncio
    async def test_nonzero_exit_and_stderr(self, build):
        adapter = build(LocalRuntimeAdapter)

        result = await adapter.execute(
            "execute",
            {"code": "import sys; sys.stderr.write('boom'); sys.exit(3)", "language": "python"},
        )

        assert result["exitCode"] == 3
        assert result["error"] == "boom"

    @pytest.mark.asyncio
    async def test_workdir_removed_after_run(self, build):
        adapter = build(LocalRuntimeAdapter)

        result = await adapter.execute("execute", {"code": "import os; print(os.getcwd())", "language": "python"})

        workdir = Path(result["output"].strip())
        assert workdir.name.startswith("gateway-runtime-")
        assert not workdir.exists()

    @pytest.mark.asyncio
    async def test_run_timeout(self, build):
        adapter = build(LocalRuntimeAdapter, local_runtime_timeout_seconds=0.5)

        with pytest.raises(ProviderCallError) as exc_info:
            await adapter.execute("execute", {"code": "import time; time.sleep(10)", "language": "python"})
        assert exc_info.value.timed_out is True


# ==========================================================================
# Test: Memory adapters
# ==========================================================================


class TestMemoryAdapters:
    @pytest.mark.asyncio
    async def test_add_wraps_single_message(self, build, provider):
        provider.add(
            "POST",
            MEM0_MEMORIES,
            json={"results": [{"id": "m1", "memory": "Likes green tea", "event": "ADD"}]},
        )
        adapter = build(Mem0Adapter)

        result = await adapter.execute(
            "add",
            {"userId": "u-1", "message": "I like green tea", "metadata": {"source": "chat"}},
            session_id="s-1",
        )

        assert result["action"] == "add"
        assert result["userId"] == "u-1"
        assert result["memories"][0]["id"] == "m1"
        assert result["memories"][0]["event"] == "ADD"

        request = provider.calls[0]
        assert request.headers["Authorization"] == "Token m0-test"
        body = provider.body(request)
        assert body["messages"] == [{"role": "user", "content": "I like green tea"}]
        assert body["user_id"] == "u-1"
        assert body["metadata"]["source"] == "chat"
        assert body["metadata"]["session_id"] == "s-1"
        assert "timestamp" in body["metadata"]

    @pytest.mark.asyncio
    async def test_search(self, build, provider):
        provider.add(
            "POST",
            "https://api.mem0.ai/v1/memories/search/",
            json=[{"id": "m1", "memory": "Likes tea", "score": 0.9}],
        )
        adapter = build(Mem0Adapter)

        result = await adapter.execute("search", {"userId": "u-1", "query": "drinks", "limit": 3})

        assert result["memories"][0]["score"] == 0.9
        assert provider.body(provider.calls[0]) == {"query": "drinks", "user_id": "u-1", "limit": 3}

    @pytest.mark.asyncio
    async def test_list_get_update_delete(self, build, provider):
        provider.add("GET", MEM0_MEMORIES, json=[{"id": "m1", "memory": "a"}, {"id": "m2", "memory": "b"}])
        provider.add("GET", f"{MEM0_MEMORIES}m1/", json={"id": "m1", "memory": "a"})
        provider.add("PUT", f"{MEM0_MEMORIES}m1/", json={"id": "m1", "memory": "c"})
        provider.add("DELETE", f"{MEM0_MEMORIES}m1/", status=204)
        adapter = build(Mem0Adapter)

        listed = await adapter.execute("list", {"userId": "u-1"})
        fetched = await adapter.execute("get", {"userId": "u-1", "memoryId": "m1"})
        updated = await adapter.execute("update", {"userId": "u-1", "memoryId": "m1", "text": "c"})
        deleted = await adapter.execute("delete", {"userId": "u-1", "memoryId": "m1"})

        assert [m["id"] for m in listed["memories"]] == ["m1", "m2"]
        assert provider.calls[0].url.params["user_id"] == "u-1"
        assert fetched["memory"]["memory"] == "a"
        assert updated["memory"]["memory"] == "c"
        assert deleted == {"action": "delete", "userId": "u-1", "deleted": True}

    @pytest.mark.asyncio
    async def test_user_id_required(self, build, provider):
        adapter = build(Mem0Adapter)
        with pytest.raises(InvalidEnvelope, match="userId"):
            await adapter.execute("list", {})
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_update_requires_text(self, build):
        adapter = build(Mem0Adapter)
        with pytest.raises(InvalidEnvelope, match="parameters.text"):
            await adapter.execute("update", {"userId": "u-1", "memoryId": "m1"})

    @pytest.mark.asyncio
    async def test_add_requires_messages(self, build):
        adapter = build(Mem0Adapter)
        with pytest.raises(InvalidEnvelope, match="messages"):
            await adapter.execute("add", {"userId": "u-1"})

    @pytest.mark.asyncio
    async def test_self_hosted_paths(self, build, provider):
        provider.add("GET", "http://localhost:8888/memories/m1", json={"id": "m1", "text": "plain text"})
        adapter = build(SelfHostedMem0Adapter)

        result = await adapter.execute("get", {"userId": "u-1", "memoryId": "m1"})

        assert result["memory"]["memory"] == "plain text"
        assert "Authorization" not in provider.calls[0].headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("adapter_cls", [Mem0Adapter, SelfHostedMem0Adapter])
    @pytest.mark.parametrize("action", ["get", "update", "delete"])
    @pytest.mark.parametrize("memory_id", ["../v1/projects", "m1/../../users", "m1?user_id=other"])
    async def test_unsafe_memory_id_rejected_before_any_request(
        self, build, provider, adapter_cls, action, memory_id
    ):
        adapter = build(adapter_cls)

        with pytest.raises(InvalidEnvelope, match="memoryId"):
            await adapter.execute(action, {"userId": "u-1", "memoryId": memory_id, "text": "t"})

        assert provider.calls == []


# ==========================================================================
# Test: Normalizer
# ==========================================================================


class TestNormalizer:
    def test_openai_native_citations(self):
        data = openai_reply("text", citations=["https://a.example/.", "https://a.example/", "https://b.example"])
        result = normalize_openai_chat(data)
        assert result["citedUrls"] == ["https://a.example/", "https://b.example"]

    def test_urls_extracted_from_text(self):
        result = normalize_openai_chat(openai_reply("See https://docs.python.org/3/, and (https://pypi.org)."))
        assert result["citedUrls"] == ["https://docs.python.org/3/", "https://pypi.org"]

    def test_openai_empty_choices(self):
        result = normalize_openai_chat({"choices": []}, default_model="m")
        assert result["text"] == ""
        assert result["model"] == "m"
        assert result["usage"]["totalTokens"] == 0

    def test_anthropic_skips_non_text_blocks(self):
        data = {
            "content": [{"type": "tool_use", "id": "x"}, {"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            "usage": {"input_tokens": 1, "output_tokens": 2},
        }
        result = normalize_anthropic_chat(data, default_model="claude")
        assert result["text"] == "ab"
        assert result["model"] == "claude"
        assert result["usage"]["totalTokens"] == 3

    def test_gemini_blocked_prompt(self):
        result = normalize_gemini_chat({"promptFeedback": {"blockReason": "SAFETY"}}, model="gemini")
        assert result["censored"] is True
        assert result["finishReason"] == "BLOCKED_SAFETY"
        assert result["text"] == CENSORED_MARKER

    def test_gemini_normal_answer(self):
        data = {
            "candidates": [{"finishReason": "STOP", "content": {"parts": [{"text": "a"}, {"text": "b"}]}}],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 4, "totalTokenCount": 7},
        }
        result = normalize_gemini_chat(data, model="gemini")
        assert result["text"] == "ab"
        assert result["censored"] is False
        assert result["usage"] == {"inputTokens": 3, "outputTokens": 4, "totalTokens": 7}

    def test_browser_result_unwrapped(self):
        assert normalize_browser_action({"result": 1}, "s", "click")["data"] == 1
        assert normalize_browser_action({"result": 1, "a": 2, "b": 3}, "s", "click")["data"] == {
            "result": 1,
            "a": 2,
            "b": 3,
        }

    def test_mem0_single_object(self):
        result = normalize_mem0({"id": "m1", "memory": "x", "metadata": None}, "get", "u")
        assert result["memory"]["metadata"] == {}
