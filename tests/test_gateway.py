"""Tests for the admission pipeline, driven directly with fake collaborators."""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from aigate.core.config import settings
from aigate.core.exceptions import BadRequestError
from aigate.gateway.errors import UsageOracleError, VendorError
from aigate.gateway.gateway import AdmissionGateway, body_size_bytes
from aigate.gateway.types import (
    AIProvider,
    EndpointPolicy,
    ErrorCode,
    InboundRequest,
    UsageStatus,
)

from tests.conftest import FakeOracle, FakeStore

POLICY = EndpointPolicy(name="chat", rate_limit_max=3, window_ms=60_000, timeout_ms=300)


def _request(method: str = "POST", body=None, headers: dict | None = None) -> InboundRequest:
    return InboundRequest(
        method=method,
        headers=headers or {"X-Forwarded-For": "203.0.113.5"},
        client_host="10.0.0.1",
        body=body if body is not None else {"prompt": "hi"},
    )


async def ok_operation(ctx):
    return {"text": "hello", "provider": ctx.provider.value}


# ==========================================================================
# Test: Request shape checks
# ==========================================================================


class TestShapeChecks:
    @pytest.mark.asyncio
    async def test_wrong_method(self, gateway, oracle):
        result = await gateway.handle(_request("GET"), POLICY, ok_operation)

        assert result.status == 405
        assert result.body["error_code"] == "METHOD_NOT_ALLOWED"
        assert result.body["retryable"] is False
        assert result.headers["Allow"] == "POST"
        assert oracle.status_calls == 0

    @pytest.mark.asyncio
    async def test_read_endpoint_accepts_get_only(self, gateway):
        policy = EndpointPolicy(name="usage", rate_limit_max=5, write=False, metered=False)

        async def op(ctx):
            return {"ok": True}

        assert (await gateway.handle(_request("GET"), policy, op)).status == 200
        assert (await gateway.handle(_request("POST"), policy, op)).status == 405

    @pytest.mark.asyncio
    async def test_declared_content_length_too_large(self, gateway):
        req = _request(headers={"Content-Length": "5000"})
        result = await gateway.handle(req, POLICY, ok_operation)

        assert result.status == 413
        assert result.body["error_code"] == "PAYLOAD_TOO_LARGE"
        assert result.body["details"] == {"body_size": 5000, "limit": 4096}

    @pytest.mark.asyncio
    async def test_serialized_body_too_large(self, gateway):
        req = _request(body={"prompt": "x" * 5000})
        result = await gateway.handle(req, POLICY, ok_operation)
        assert result.status == 413

    @pytest.mark.asyncio
    async def test_oversized_request_does_not_consume_rate_limit(self, gateway):
        await gateway.handle(_request(body={"prompt": "x" * 5000}), POLICY, ok_operation)
        assert gateway.rate_limiter.bucket_count() == 0

    def test_body_size(self):
        assert body_size_bytes(InboundRequest(headers={"content-length": "12"})) == 12
        assert body_size_bytes(InboundRequest(body={"a": 1})) == len('{"a": 1}')
        assert body_size_bytes(InboundRequest(body=b"abc")) == 3
        assert body_size_bytes(InboundRequest()) == 0


# ==========================================================================
# Test: Rate limiting
# ==========================================================================


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_burst_then_denied(self, gateway, oracle, adapters):
        for expected in (2, 1, 0):
            result = await gateway.handle(_request(), POLICY, ok_operation)
            assert result.status == 200
            assert result.headers["X-RateLimit-Remaining"] == str(expected)

        denied = await gateway.handle(_request(), POLICY, ok_operation)

        assert denied.status == 429
        assert denied.body["error_code"] == "RATE_LIMITED"
        assert denied.body["retryable"] is True
        assert int(denied.headers["Retry-After"]) >= 1
        assert denied.headers["X-RateLimit-Remaining"] == "0"
        # denied before the usage check
        assert oracle.status_calls == 3

    @pytest.mark.asyncio
    async def test_bucket_is_per_endpoint_and_key(self, gateway):
        await gateway.handle(_request(), POLICY, ok_operation)
        other = EndpointPolicy(name="json", rate_limit_max=3)
        await gateway.handle(_request(), other, ok_operation)

        buckets = set(gateway.rate_limiter._buckets)
        assert buckets == {"chat:ip:203.0.113.5", "json:ip:203.0.113.5"}

    @pytest.mark.asyncio
    async def test_key_prefix(self, gateway):
        policy = EndpointPolicy(name="usage", rate_limit_max=3, write=False, metered=False, key_prefix="AI_USAGE")

        async def op(ctx):
            return {}

        await gateway.handle(_request("GET"), policy, op)
        assert "AI_USAGE:ip:203.0.113.5" in gateway.rate_limiter._buckets

    @pytest.mark.asyncio
    async def test_limiter_failure_fails_open_when_allowed(self, gateway, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("limiter broken")

        monkeypatch.setattr(gateway.rate_limiter, "check", broken)
        policy = EndpointPolicy(name="usage", rate_limit_max=3, write=False, metered=False, limiter_fail_open=True)

        async def op(ctx):
            return {"ok": True}

        result = await gateway.handle(_request("GET"), policy, op)
        assert result.status == 200
        assert "X-RateLimit-Remaining" not in result.headers

    @pytest.mark.asyncio
    async def test_limiter_failure_is_internal_error_otherwise(self, gateway, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("limiter broken")

        monkeypatch.setattr(gateway.rate_limiter, "check", broken)
        result = await gateway.handle(_request(), POLICY, ok_operation)
        assert result.status == 500
        assert result.body["error_code"] == "INTERNAL_ERROR"


# ==========================================================================
# Test: Usage guard integration
# ==========================================================================


class TestUsage:
    @pytest.mark.asyncio
    async def test_success_charges_once(self, gateway, oracle):
        result = await gateway.handle(_request(), POLICY, ok_operation)
        await gateway.usage_guard.drain()

        assert result.status == 200
        assert result.body == {"ok": True, "data": {"text": "hello", "provider": "gemini"}}
        assert oracle.increments == [1]

    @pytest.mark.asyncio
    async def test_success_headers(self, gateway):
        result = await gateway.handle(_request(), POLICY, ok_operation)

        assert result.headers["X-AI-Remaining"] == "25"
        assert result.headers["X-AI-Limit"] == "25"
        assert result.headers["X-AI-Membership"] == "free"
        assert result.headers["X-AI-Burst-Remaining"] == "10"
        assert result.headers["X-AI-Burst-Limit"] == "10"
        assert result.headers["X-AI-Provider-Used"] == "gemini"
        assert "X-RateLimit-Reset" in result.headers

    @pytest.mark.asyncio
    async def test_quota_exhausted_skips_upstream(self, gateway, oracle):
        oracle.usage = UsageStatus(membership="free", remaining=0, limit=50)
        called = []

        async def op(ctx):
            called.append(ctx)
            return {}

        result = await gateway.handle(_request(), POLICY, op)
        await gateway.usage_guard.drain()

        assert result.status == 429
        assert result.body["error_code"] == "QUOTA_EXCEEDED"
        assert int(result.headers["Retry-After"]) >= 1
        assert called == []
        assert oracle.increments == []

    @pytest.mark.asyncio
    async def test_burst_denial_has_retry_after(self, gateway, oracle):
        oracle.usage = UsageStatus(remaining=5, limit=50, burst_remaining=0, burst_limit=10)
        result = await gateway.handle(_request(), POLICY, ok_operation)
        assert result.body["error_code"] == "RATE_LIMITED"
        assert result.headers["Retry-After"] == "60"

    @pytest.mark.asyncio
    async def test_quota_retry_after_runs_to_utc_midnight(self, gateway, oracle, monkeypatch):
        monkeypatch.setattr("aigate.gateway.usage_guard.seconds_until_utc_midnight", lambda: 4321)
        oracle.usage = UsageStatus(membership="free", remaining=0, limit=50)

        result = await gateway.handle(_request(), POLICY, ok_operation)

        assert result.body["error_code"] == "QUOTA_EXCEEDED"
        assert result.headers["Retry-After"] == "4321"

    @pytest.mark.asyncio
    async def test_vendor_quota_error_has_short_retry_after(self, gateway, monkeypatch):
        monkeypatch.setattr("aigate.gateway.usage_guard.seconds_until_utc_midnight", lambda: 4321)

        async def op(ctx):
            raise VendorError("429 RESOURCE_EXHAUSTED: Quota exceeded for requests per minute")

        result = await gateway.handle(_request(), POLICY, op)

        assert result.status == 429
        assert result.body["error_code"] == "QUOTA_EXCEEDED"
        assert result.headers["Retry-After"] == "60"

    @pytest.mark.asyncio
    async def test_oracle_timeout(self, gateway, oracle):
        oracle.delay = 1.0
        result = await gateway.handle(_request(), POLICY, ok_operation)

        assert result.status == 504
        assert result.body["error_code"] == "TIMEOUT"
        assert result.body["retryable"] is True

    @pytest.mark.asyncio
    async def test_oracle_unauthorized(self, gateway, oracle):
        oracle.error = UsageOracleError(401, "Sign in required")
        result = await gateway.handle(_request(), POLICY, ok_operation)
        assert result.status == 401
        assert result.body["error_code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_upstream_failure_not_charged(self, gateway, oracle):
        async def op(ctx):
            raise VendorError("Rate limit exceeded: busy", status_code=429, vendor="gemini")

        result = await gateway.handle(_request(), POLICY, op)
        await gateway.usage_guard.drain()

        assert result.status == 429
        assert result.body["error_code"] == "PROVIDER_RATE_LIMIT"
        assert "Retry-After" not in result.headers
        assert oracle.increments == []

    @pytest.mark.asyncio
    async def test_increment_failure_does_not_fail_request(self, gateway, oracle):
        oracle.increment_error = RuntimeError("ledger down")
        result = await gateway.handle(_request(), POLICY, ok_operation)
        await gateway.usage_guard.drain()
        assert result.status == 200

    @pytest.mark.asyncio
    async def test_unmetered_policy_skips_guard_and_provider(self, gateway, oracle, store):
        policy = EndpointPolicy(name="meter", rate_limit_max=3, metered=False)

        async def op(ctx):
            assert ctx.provider is None
            return {}

        result = await gateway.handle(_request(), policy, op)
        await gateway.usage_guard.drain()

        assert result.status == 200
        assert oracle.status_calls == 0
        assert store.calls == 0
        assert oracle.increments == []
        assert "X-AI-Provider-Used" not in result.headers


# ==========================================================================
# Test: Provider and upstream
# ==========================================================================


class TestUpstream:
    @pytest.mark.asyncio
    async def test_provider_from_store(self, gateway, store):
        store.value = {"provider": "anthropic"}
        result = await gateway.handle(_request(), POLICY, ok_operation)
        assert result.headers["X-AI-Provider-Used"] == "anthropic"

    @pytest.mark.asyncio
    async def test_provider_env_override(self, gateway, store, monkeypatch):
        store.value = {"provider": "anthropic"}
        monkeypatch.setenv("AI_PROVIDER", "openai")
        result = await gateway.handle(_request(), POLICY, ok_operation)
        assert result.body["data"]["provider"] == AIProvider.OPENAI.value

    @pytest.mark.asyncio
    async def test_store_failure_still_serves(self, oracle):
        from aigate.gateway.provider_resolver import ProviderResolver
        from aigate.gateway.rate_limiter import FixedWindowRateLimiter
        from aigate.gateway.request_key import JwtAuthVerifier, RequestKeyResolver
        from aigate.gateway.usage_guard import UsageGuard

        gateway = AdmissionGateway(
            RequestKeyResolver(JwtAuthVerifier()),
            FixedWindowRateLimiter(),
            UsageGuard(oracle),
            ProviderResolver(store=FakeStore(error=RuntimeError("db down"))),
        )
        result = await gateway.handle(_request(), POLICY, ok_operation)
        await gateway.usage_guard.drain()

        assert result.status == 200
        assert result.headers["X-AI-Provider-Used"] == "gemini"

    @pytest.mark.asyncio
    async def test_upstream_timeout(self, gateway, oracle):
        async def slow(ctx):
            await asyncio.sleep(1.0)
            return {}

        result = await gateway.handle(_request(), POLICY, slow)
        await gateway.usage_guard.drain()

        assert result.status == 504
        assert result.body["error_code"] == "TIMEOUT"
        assert oracle.increments == []

    @pytest.mark.asyncio
    async def test_safety_block(self, gateway):
        async def op(ctx):
            raise VendorError("Response blocked by safety filters (finishReason: SAFETY)", 400, "gemini")

        result = await gateway.handle(_request(), POLICY, op)
        assert result.status == 400
        assert result.body["error_code"] == "SAFETY_BLOCK"
        assert result.body["retryable"] is False

    @pytest.mark.asyncio
    async def test_api_error_passes_through(self, gateway):
        async def op(ctx):
            raise BadRequestError("Prompt is required")

        result = await gateway.handle(_request(), POLICY, op)
        assert result.status == 400
        assert result.body["error_code"] == "BAD_REQUEST"
        assert result.body["message"] == "Prompt is required"

    @pytest.mark.asyncio
    async def test_operation_headers_are_merged(self, gateway):
        async def op(ctx):
            ctx.headers["X-Extra"] = "1"
            return {}

        result = await gateway.handle(_request(), POLICY, op)
        assert result.headers["X-Extra"] == "1"


# ==========================================================================
# Test: Details and metrics
# ==========================================================================


class TestDetailsAndMetrics:
    @pytest.mark.asyncio
    async def test_denials_log_structured_fields(self, gateway, oracle, caplog):
        oracle.usage = UsageStatus(remaining=0, limit=25)

        with caplog.at_level("INFO", logger="aigate.gateway.gateway"):
            await gateway.handle(_request(), POLICY, ok_operation)

        record = next(r for r in caplog.records if r.getMessage().startswith("Usage guard denied"))
        assert record.admission_key == "ip:203.0.113.5"
        assert record.endpoint == "chat"
        assert record.error_code == "QUOTA_EXCEEDED"

    @pytest.mark.asyncio
    async def test_failures_log_error_code(self, gateway, caplog):
        async def op(ctx):
            raise VendorError("Candidate was blocked due to SAFETY")

        with caplog.at_level("ERROR", logger="aigate.gateway.gateway"):
            await gateway.handle(_request(), POLICY, op)

        record = next(r for r in caplog.records if r.levelname == "ERROR")
        assert record.endpoint == "chat"
        assert record.error_code == "SAFETY_BLOCK"

    @pytest.mark.asyncio
    async def test_details_outside_production(self, gateway):
        async def op(ctx):
            raise RuntimeError("kaboom")

        result = await gateway.handle(_request(), POLICY, op)
        assert result.body["error_code"] == ErrorCode.INTERNAL_ERROR.value
        assert result.body["details"]["name"] == "RuntimeError"
        assert result.body["details"]["message"] == "kaboom"

    @pytest.mark.asyncio
    async def test_no_details_in_production(self, gateway, monkeypatch):
        monkeypatch.setattr(settings, "app_env", "production")

        async def op(ctx):
            raise RuntimeError("kaboom")

        result = await gateway.handle(_request(), POLICY, op)
        assert "details" not in result.body

    @pytest.mark.asyncio
    async def test_decisions_are_counted(self, gateway):
        labels = {"endpoint": "chat", "outcome": "METHOD_NOT_ALLOWED"}
        before = REGISTRY.get_sample_value("aigate_admission_decisions_total", labels) or 0.0

        await gateway.handle(_request("PUT"), POLICY, ok_operation)

        assert REGISTRY.get_sample_value("aigate_admission_decisions_total", labels) == before + 1

    def test_status(self, gateway):
        status = gateway.get_status()
        assert status["rate_limits"]["buckets"] == 0
        assert status["provider"] is None
