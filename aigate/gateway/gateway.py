"""AI Admission Gateway: the pipeline every AI endpoint runs through.

Per request, in order:
  1. Method check (405) and body size cap (413)
  2. RequestKeyResolver: user:<id> or ip:<client-ip>
  3. FixedWindowRateLimiter, one bucket per endpoint class and key
  4. UsageGuard pre-check against the usage oracle (metered endpoints)
  5. ProviderResolver (metered endpoints)
  6. Upstream operation under with_timeout
  7. Best-effort usage increment, detached

Any failure at any stage ends up as one ErrorPayload. Errors that are
already in the public contract (ApiError) pass through; everything else is
classified exactly once.

Usage:
    gateway = AdmissionGateway(key_resolver, rate_limiter, usage_guard, provider_resolver)
    result = await gateway.handle(inbound, CHAT_POLICY, operation)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aigate.core.exceptions import ApiError
from aigate.core.metrics import ADMISSION_DECISIONS
from aigate.gateway.errors import classify, error_details, preview_details
from aigate.gateway.provider_resolver import ProviderResolver
from aigate.gateway.rate_limiter import FixedWindowRateLimiter
from aigate.gateway.request_key import RequestKeyResolver
from aigate.gateway.timeout import with_timeout
from aigate.gateway.types import (
    RETRY_AFTER_CODES,
    AdmissionContext,
    EndpointPolicy,
    ErrorCode,
    ErrorPayload,
    GatewayResult,
    InboundRequest,
    RateLimitResult,
)
from aigate.gateway.usage_guard import BURST_RETRY_AFTER_SECONDS, Denied, UsageGuard

logger = logging.getLogger(__name__)

Operation = Callable[[AdmissionContext], Awaitable[Any]]

PROVIDER_HEADER = "X-AI-Provider-Used"


def _log_fields(key, policy: EndpointPolicy, code: ErrorCode) -> dict:
    return {"admission_key": str(key), "endpoint": policy.name, "error_code": code.value}


def body_size_bytes(request: InboundRequest) -> int:
    """Declared Content-Length, else the size of the JSON-serialized body."""
    declared = request.header("content-length")
    if declared:
        try:
            return max(0, int(declared))
        except ValueError:
            pass
    if request.body is None:
        return 0
    if isinstance(request.body, (bytes, bytearray)):
        return len(request.body)
    try:
        return len(json.dumps(request.body, ensure_ascii=False).encode("utf-8"))
    except (TypeError, ValueError):
        return len(str(request.body).encode("utf-8"))


class AdmissionGateway:
    """Orchestrates admission control around an upstream AI operation.

    Holds its own limiter buckets and provider cache; one instance per
    application.
    """

    def __init__(
        self,
        key_resolver: RequestKeyResolver,
        rate_limiter: FixedWindowRateLimiter,
        usage_guard: UsageGuard,
        provider_resolver: ProviderResolver,
        max_body_bytes: int = 2 * 1024 * 1024,
    ):
        self.key_resolver = key_resolver
        self.rate_limiter = rate_limiter
        self.usage_guard = usage_guard
        self.provider_resolver = provider_resolver
        self.max_body_bytes = max_body_bytes

    async def handle(
        self,
        request: InboundRequest,
        policy: EndpointPolicy,
        operation: Operation,
    ) -> GatewayResult:
        """Run the full pipeline. Never raises; failures come back as results."""
        headers: dict[str, str] = {}
        try:
            result = await self._run(request, policy, operation, headers)
        except ApiError as e:
            result = self._failure(e.payload, {**headers, **e.headers})
        except Exception as e:
            mapped = classify(e)
            logger.error(
                "AI %s request failed: %s",
                policy.name,
                e,
                exc_info=True,
                extra={"endpoint": policy.name, "error_code": mapped.error_code.value},
            )
            mapped.details = error_details(e)
            result = self._failure(mapped, headers)

        outcome = "ok" if result.ok else result.body.get("error_code", "error")
        ADMISSION_DECISIONS.labels(endpoint=policy.name, outcome=outcome).inc()
        return result

    async def _run(
        self,
        request: InboundRequest,
        policy: EndpointPolicy,
        operation: Operation,
        headers: dict[str, str],
    ) -> GatewayResult:
        if request.method.upper() != policy.method:
            raise ApiError(
                ErrorPayload(405, ErrorCode.METHOD_NOT_ALLOWED, "Method not allowed.", False),
                {"Allow": policy.method},
            )

        size = body_size_bytes(request)
        if size > self.max_body_bytes:
            raise ApiError(
                ErrorPayload(
                    413,
                    ErrorCode.PAYLOAD_TOO_LARGE,
                    "Request payload too large. Please keep requests under ~2MB.",
                    False,
                    details=preview_details(body_size=size, limit=self.max_body_bytes),
                )
            )

        key = await self.key_resolver.resolve(request)

        limit = self._check_rate_limit(policy, key)
        if limit is not None:
            headers.update(limit.headers())
            if not limit.ok:
                logger.info(
                    "Rate limited %s on %s",
                    key,
                    policy.name,
                    extra=_log_fields(key, policy, ErrorCode.RATE_LIMITED),
                )
                raise ApiError(
                    ErrorPayload(
                        429,
                        ErrorCode.RATE_LIMITED,
                        policy.rate_limited_message,
                        True,
                        details=preview_details(key=str(key), reset_at=limit.reset_at),
                    ),
                    limit.headers(),
                )

        ctx = AdmissionContext(request=request, key=key)

        if policy.metered:
            decision = await self.usage_guard.admit(request, policy.units)
            if isinstance(decision, Denied):
                logger.info(
                    "Usage guard denied %s on %s: %s",
                    key,
                    policy.name,
                    decision.error.error_code.value,
                    extra=_log_fields(key, policy, decision.error.error_code),
                )
                raise ApiError(decision.error, decision.headers)
            ctx.usage = decision.usage
            headers.update(decision.usage.headers())

            ctx.provider = await self.provider_resolver.resolve()
            headers[PROVIDER_HEADER] = ctx.provider.value

        data = await with_timeout(operation(ctx), policy.timeout_ms)

        if policy.metered:
            self.usage_guard.charge(request, policy.units)

        headers.update(ctx.headers)
        return GatewayResult(status=200, body={"ok": True, "data": data}, headers=headers)

    def _check_rate_limit(self, policy: EndpointPolicy, key) -> RateLimitResult | None:
        try:
            return self.rate_limiter.check(policy.bucket_key(key), policy.window_ms, policy.rate_limit_max)
        except Exception as e:
            if not policy.limiter_fail_open:
                raise
            logger.warning("Rate limiter failed on %s, admitting: %s", policy.name, e)
            return None

    @staticmethod
    def _failure(payload: ErrorPayload, headers: dict[str, str]) -> GatewayResult:
        headers = dict(headers)
        # Usage-guard denials carry their own Retry-After
        if payload.error_code in RETRY_AFTER_CODES and "Retry-After" not in headers:
            headers["Retry-After"] = str(BURST_RETRY_AFTER_SECONDS)
        return GatewayResult(status=payload.status, body=payload.to_dict(), headers=headers)

    def get_status(self) -> dict:
        """Gateway state for the health endpoint."""
        cached = self.provider_resolver.cached
        return {
            "rate_limits": self.rate_limiter.get_stats(),
            "provider": cached.provider.value if cached else None,
            "provider_source": cached.source.value if cached else None,
        }
