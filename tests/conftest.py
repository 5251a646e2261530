from __future__ import annotations

import json
from collections.abc import AsyncGenerator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import Settings, settings

# Override settings for tests
settings.app_env = "development"
settings.audit_sink = "none"

from app.gateway.audit import AuditEmitter  # noqa: E402
from app.gateway.gateway import ActionGateway  # noqa: E402
from app.gateway.types import AuditRecord  # noqa: E402

TEST_CREDENTIALS = {
    "openai_api_key": "sk-test-openai",
    "anthropic_api_key": "sk-ant-test",
    "google_api_key": "test-google-key",
    "groq_api_key": "gsk-test",
    "deepseek_api_key": "sk-test-deepseek",
    "perplexity_api_key": "pplx-test",
    "tavily_api_key": "tvly-test",
    "exa_api_key": "exa-test",
    "serpapi_api_key": "serp-test",
    "jina_api_key": "jina-test",
    "browserbase_api_key": "bb-test",
    "browserbase_project_id": "proj-1",
    "scrapybara_api_key": "scrapy-test",
    "e2b_api_key": "e2b-test",
    "mem0_api_key": "m0-test",
}


def make_settings(**overrides) -> Settings:
    """Settings isolated from .env, with every credential set and no backoff delay."""
    values = {
        **TEST_CREDENTIALS,
        "audit_sink": "none",
        "retry_backoff_base": 0.0,
        "retry_backoff_cap": 0.0,
        **overrides,
    }
    return Settings(_env_file=None, **values)


class MockProvider:
    """httpx.MockTransport handler that routes by method and URL (query ignored).

    Each route holds a queue of canned replies; the last one repeats.
    Unrouted requests get a 404.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[tuple]] = {}
        self.calls: list[httpx.Request] = []

    def add(self, method: str, url: str, status: int = 200, json=None, text: str | None = None, exc=None):
        self.routes.setdefault((method, url), []).append((status, json, text, exc))
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.netloc.decode()}{request.url.path}")
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"error": "no route"})
        status, body, text, exc = queue.pop(0) if len(queue) > 1 else queue[0]
        if exc is not None:
            raise exc
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=body if body is not None else {})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls_to(self, method: str, url: str) -> list[httpx.Request]:
        return [
            r
            for r in self.calls
            if r.method == method and f"{r.url.scheme}://{r.url.netloc.decode()}{r.url.path}" == url
        ]

    @staticmethod
    def body(request: httpx.Request) -> dict:
        return json.loads(request.content)


class RecordingSink:
    def __init__(self):
        self.records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def aclose(self) -> None:
        return None


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
async def make_gateway(provider: MockProvider, sink: RecordingSink):
    """Build an ActionGateway wired to the mock provider and the recording sink."""
    created: list[ActionGateway] = []

    def _make(**overrides) -> ActionGateway:
        gateway = ActionGateway(
            settings=make_settings(**overrides),
            audit=AuditEmitter(sink),
            transport=provider.transport,
        )
        created.append(gateway)
        return gateway

    yield _make

    for gateway in created:
        await gateway.aclose()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
