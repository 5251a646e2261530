"""Response Normalizer — one free function per provider response shape.

Adapters call these to turn a vendor's JSON into the common payload shapes:
  - chat:    {text, model, finishReason, censored, citedUrls, usage}
  - search:  {query, provider, answer, results: [{title, url, snippet}]}
  - browser: {browserSessionId, action, data}
  - runtime: {output, error, exitCode}
  - memory:  {action, userId, memories | memory | deleted}
"""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# URL pattern for extracting citations from response text
_URL_PATTERN = re.compile(r"https?://[^\s\)\]\}\"'<>,]+")

CENSORED_MARKER = "[CENSORED_BY_VENDOR]"


def _extract_urls(text: str) -> list[str]:
    """Extract unique URLs from response text."""
    if not text:
        return []
    return _clean_urls(_URL_PATTERN.findall(text))


def _clean_urls(urls: list[str]) -> list[str]:
    """Clean and deduplicate a list of URLs."""
    seen: set[str] = set()
    result: list[str] = []
    for url in urls:
        cleaned = url.strip().rstrip(".,;:!?)")
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def _usage(input_tokens: Any, output_tokens: Any, total_tokens: Any = 0) -> dict:
    input_tokens = int(input_tokens or 0)
    output_tokens = int(output_tokens or 0)
    total = int(total_tokens or 0) or input_tokens + output_tokens
    return {"inputTokens": input_tokens, "outputTokens": output_tokens, "totalTokens": total}


def _chat_payload(
    text: str,
    model: str,
    finish_reason: str,
    usage: dict,
    cited_urls: list[str] | None = None,
    censored: bool = False,
) -> dict:
    if censored:
        text = CENSORED_MARKER
    urls = _clean_urls(cited_urls) if cited_urls else ([] if censored else _extract_urls(text))
    return {
        "text": text,
        "model": model,
        "finishReason": finish_reason,
        "censored": censored,
        "citedUrls": urls,
        "usage": usage,
    }


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


def normalize_openai_chat(data: dict, default_model: str = "") -> dict:
    """OpenAI chat completions and compatible APIs (DeepSeek, Groq, Perplexity, Ollama)."""
    choices = data.get("choices") or [{}]
    choice = choices[0]
    usage = data.get("usage") or {}
    return _chat_payload(
        text=(choice.get("message") or {}).get("content") or "",
        model=data.get("model", default_model),
        finish_reason=choice.get("finish_reason") or "",
        usage=_usage(usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")),
        # Perplexity returns native citations
        cited_urls=data.get("citations"),
    )


def normalize_anthropic_chat(data: dict, default_model: str = "") -> dict:
    """Anthropic Messages API."""
    blocks = data.get("content") or []
    text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
    usage = data.get("usage") or {}
    return _chat_payload(
        text=text,
        model=data.get("model", default_model),
        finish_reason=data.get("stop_reason") or "",
        usage=_usage(usage.get("input_tokens"), usage.get("output_tokens")),
    )


def normalize_gemini_chat(data: dict, model: str = "") -> dict:
    """Google Gemini generateContent, with SAFETY filter detection."""
    usage_meta = data.get("usageMetadata") or {}
    usage = _usage(
        usage_meta.get("promptTokenCount"),
        usage_meta.get("candidatesTokenCount"),
        usage_meta.get("totalTokenCount"),
    )

    candidates = data.get("candidates") or []
    if not candidates:
        # No candidates: the prompt itself may have been blocked
        block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
        if block_reason:
            return _chat_payload("", model, f"BLOCKED_{block_reason}", usage, censored=True)
        return _chat_payload("", model, "", usage)

    candidate = candidates[0]
    finish_reason = candidate.get("finishReason", "")
    if finish_reason == "SAFETY":
        return _chat_payload("", model, finish_reason, usage, censored=True)

    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if "text" in p)
    return _chat_payload(text, model, finish_reason, usage)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def _search_payload(query: str, provider: str, results: list[dict], answer: str = "") -> dict:
    return {"query": query, "provider": provider, "answer": answer, "results": results}


def _hit(title: Any, url: Any, snippet: Any) -> dict:
    return {"title": title or "", "url": url or "", "snippet": snippet or ""}


def normalize_tavily_search(data: dict, query: str) -> dict:
    results = [_hit(r.get("title"), r.get("url"), r.get("content")) for r in data.get("results") or []]
    return _search_payload(query, "tavily", results, answer=data.get("answer") or "")


def normalize_exa_search(data: dict, query: str) -> dict:
    results = [_hit(r.get("title"), r.get("url"), r.get("text") or r.get("summary")) for r in data.get("results") or []]
    return _search_payload(query, "exa", results)


def normalize_serpapi_search(data: dict, query: str) -> dict:
    results = [_hit(r.get("title"), r.get("link"), r.get("snippet")) for r in data.get("organic_results") or []]
    answer = (data.get("answer_box") or {}).get("answer") or ""
    return _search_payload(query, "serpapi", results, answer=answer)


def normalize_perplexity_search(data: dict, query: str) -> dict:
    chat = normalize_openai_chat(data)
    results = [_hit("", url, "") for url in chat["citedUrls"]]
    return _search_payload(query, "perplexity", results, answer=chat["text"])


def normalize_jina_search(data: dict, query: str) -> dict:
    items = data.get("data") or []
    if isinstance(items, dict):
        items = [items]
    results = [_hit(r.get("title"), r.get("url"), r.get("description") or r.get("content")) for r in items]
    return _search_payload(query, "jina", results)


def normalize_searxng_search(data: dict, query: str) -> dict:
    results = [_hit(r.get("title"), r.get("url"), r.get("content")) for r in data.get("results") or []]
    answers = data.get("answers") or []
    answer = answers[0] if answers and isinstance(answers[0], str) else ""
    return _search_payload(query, "searxng", results, answer=answer)


# ---------------------------------------------------------------------------
# Browser, runtime, memory
# ---------------------------------------------------------------------------


def normalize_browser_action(data: Any, browser_session_id: str | None, action: str) -> dict:
    if isinstance(data, dict) and "result" in data and len(data) <= 2:
        data = data["result"]
    return {"browserSessionId": browser_session_id, "action": action, "data": data}


def normalize_runtime_output(output: str, error: str, exit_code: int | None) -> dict:
    return {"output": output or "", "error": error or "", "exitCode": exit_code}


def normalize_mem0(data: Any, action: str, user_id: str) -> dict:
    """Mem0 returns a list, a {results: [...]} wrapper, or a single memory object."""
    payload: dict[str, Any] = {"action": action, "userId": user_id}
    if action == "delete":
        payload["deleted"] = True
        return payload
    if isinstance(data, dict) and "results" in data:
        data = data["results"]
    if isinstance(data, list):
        payload["memories"] = [_memory(m) for m in data]
    else:
        payload["memory"] = _memory(data or {})
    return payload


def _memory(item: dict) -> dict:
    return {
        "id": item.get("id", ""),
        "memory": item.get("memory", item.get("text", "")),
        "event": item.get("event"),
        "score": item.get("score"),
        "metadata": item.get("metadata") or {},
        "createdAt": item.get("created_at"),
        "updatedAt": item.get("updated_at"),
    }
