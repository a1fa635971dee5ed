import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from aigate.core.config import settings

# Override settings for tests
settings.jwt_secret_key = "test-secret-key-that-is-at-least-32-bytes-long"
settings.app_env = "development"

from aigate.core.dependencies import get_adapters, get_gateway  # noqa: E402
from aigate.core.security import create_access_token  # noqa: E402
from aigate.gateway.gateway import AdmissionGateway  # noqa: E402
from aigate.gateway.provider_resolver import OVERRIDE_ENV_VAR, ProviderResolver  # noqa: E402
from aigate.gateway.rate_limiter import FixedWindowRateLimiter  # noqa: E402
from aigate.gateway.request_key import JwtAuthVerifier, RequestKeyResolver  # noqa: E402
from aigate.gateway.types import AIProvider, InboundRequest, UsageStatus  # noqa: E402
from aigate.gateway.usage_guard import UsageGuard  # noqa: E402
from aigate.gateway.vendor_adapters import (  # noqa: E402
    BaseVendorAdapter,
    CompletionInput,
    GenerationConfig,
    VendorResult,
)
from aigate.main import app  # noqa: E402


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeOracle:
    """Usage oracle double: returns `usage`, or raises `error`, after `delay` seconds."""

    def __init__(self, usage: UsageStatus | None = None, error: Exception | None = None, delay: float = 0.0):
        self.usage = usage or UsageStatus(
            membership="free", remaining=25, limit=25, burst_remaining=10, burst_limit=10
        )
        self.error = error
        self.delay = delay
        self.increment_error: Exception | None = None
        self.status_calls = 0
        self.increments: list[int] = []

    async def status(self, request: InboundRequest) -> UsageStatus:
        self.status_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.usage

    async def increment(self, request: InboundRequest, units: int) -> None:
        if self.increment_error is not None:
            raise self.increment_error
        self.increments.append(units)


class FakeStore:
    def __init__(self, value=None, error: Exception | None = None, delay: float = 0.0):
        self.value = value if value is not None else {}
        self.error = error
        self.delay = delay
        self.calls = 0

    async def get_ai_defaults(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


class FakeAdapter(BaseVendorAdapter):
    """Vendor adapter double: answers `text`, or raises `error`."""

    def __init__(self, provider: AIProvider, text: str = "Hello from fake", error: Exception | None = None):
        super().__init__(api_key="test-key", default_model=f"{provider.value}-test")
        self.provider = provider
        self.supports_images = provider != AIProvider.ANTHROPIC
        self.text = text
        self.error = error
        self.calls: list[tuple[str | None, CompletionInput, GenerationConfig | None]] = []
        self.image_calls: list[tuple[str, str]] = []

    async def call(self, model, input, config=None) -> VendorResult:
        self.calls.append((model, input, config))
        if self.error is not None:
            raise self.error
        return VendorResult(text=self.text, provider=self.provider, model=model or self.model)

    async def generate_image(self, prompt: str, aspect_ratio: str = "1:1") -> dict:
        self.image_calls.append((prompt, aspect_ratio))
        if self.error is not None:
            raise self.error
        return {"images": [{"mimeType": "image/png", "data": "aGVsbG8="}]}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def clear_provider_override(monkeypatch):
    monkeypatch.delenv(OVERRIDE_ENV_VAR, raising=False)


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def gateway(oracle, store) -> AdmissionGateway:
    return AdmissionGateway(
        key_resolver=RequestKeyResolver(JwtAuthVerifier()),
        rate_limiter=FixedWindowRateLimiter(),
        usage_guard=UsageGuard(oracle, timeout_ms=250, increment_timeout_ms=250),
        provider_resolver=ProviderResolver(store=store),
        max_body_bytes=4096,
    )


@pytest.fixture
def adapters() -> dict[AIProvider, FakeAdapter]:
    return {provider: FakeAdapter(provider) for provider in AIProvider}


@pytest.fixture
async def client(gateway, adapters):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_adapters] = lambda: adapters
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await gateway.usage_guard.drain()
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    token = create_access_token("user-1")
    return {"Authorization": f"Bearer {token}"}
