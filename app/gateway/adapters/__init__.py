"""Provider adapter catalogs per deployment mode."""

from app.gateway.adapters.base import ProviderAdapter
from app.gateway.adapters.browser import BrowserbaseAdapter, SteelBrowserAdapter
from app.gateway.adapters.chat import (
    AnthropicChatAdapter,
    DeepSeekChatAdapter,
    GeminiChatAdapter,
    GroqChatAdapter,
    OllamaChatAdapter,
    OpenAIChatAdapter,
    PerplexityChatAdapter,
)
from app.gateway.adapters.memory import Mem0Adapter, SelfHostedMem0Adapter
from app.gateway.adapters.runtime import E2BRuntimeAdapter, LocalRuntimeAdapter
from app.gateway.adapters.search import (
    ExaSearchAdapter,
    JinaSearchAdapter,
    PerplexitySearchAdapter,
    SearxngSearchAdapter,
    SerpApiSearchAdapter,
    TavilySearchAdapter,
)
from app.gateway.types import EndpointClass

REMOTE_MANAGED_ADAPTERS: list[type[ProviderAdapter]] = [
    OpenAIChatAdapter,
    AnthropicChatAdapter,
    GeminiChatAdapter,
    DeepSeekChatAdapter,
    GroqChatAdapter,
    PerplexityChatAdapter,
    TavilySearchAdapter,
    PerplexitySearchAdapter,
    ExaSearchAdapter,
    SerpApiSearchAdapter,
    JinaSearchAdapter,
    BrowserbaseAdapter,
    E2BRuntimeAdapter,
    Mem0Adapter,
]

SELF_HOSTED_ADAPTERS: list[type[ProviderAdapter]] = [
    OllamaChatAdapter,
    SearxngSearchAdapter,
    SteelBrowserAdapter,
    LocalRuntimeAdapter,
    SelfHostedMem0Adapter,
]

ADAPTER_CATALOG: dict[EndpointClass, list[type[ProviderAdapter]]] = {
    EndpointClass.REMOTE_MANAGED: REMOTE_MANAGED_ADAPTERS,
    EndpointClass.SELF_HOSTED: SELF_HOSTED_ADAPTERS,
}

__all__ = ["ADAPTER_CATALOG", "ProviderAdapter", "REMOTE_MANAGED_ADAPTERS", "SELF_HOSTED_ADAPTERS"]
