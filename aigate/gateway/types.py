"""Core types and DTOs for the admission gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AIProvider(str, Enum):
    """Upstream AI vendors the gateway can forward to."""

    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"

    @classmethod
    def parse(cls, value: Any) -> AIProvider | None:
        """Normalize a raw config value; unknown or empty values yield None."""
        s = str(value or "").strip().lower()
        for provider in cls:
            if provider.value == s:
                return provider
        return None


class ProviderSource(str, Enum):
    """Where a provider resolution came from."""

    ENV = "env"
    SETTINGS_STORE = "settings_store"
    DEFAULT = "default"


class KeyScope(str, Enum):
    USER = "user"
    IP = "ip"


class ErrorCode(str, Enum):
    """Stable error codes of the public failure contract."""

    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    BAD_REQUEST = "BAD_REQUEST"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    USAGE_UNAVAILABLE = "USAGE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    SAFETY_BLOCK = "SAFETY_BLOCK"
    CONFIG_ERROR = "CONFIG_ERROR"
    PROVIDER_RATE_LIMIT = "PROVIDER_RATE_LIMIT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Codes that carry a Retry-After hint
RETRY_AFTER_CODES = frozenset({ErrorCode.RATE_LIMITED, ErrorCode.QUOTA_EXCEEDED})


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateBucket:
    """Fixed-window counter state for one key. Replaced, never mutated."""

    key: str
    window_ends_at: int  # epoch ms
    remaining: int

    def expired(self, now: int) -> bool:
        return now >= self.window_ends_at


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    remaining: int
    reset_at: int  # epoch ms
    retry_after_seconds: int = 0

    def headers(self) -> dict[str, str]:
        """Advisory headers for both the 200 and the 429 path."""
        headers = {
            "X-RateLimit-Remaining": str(self.remaining if self.ok else 0),
            "X-RateLimit-Reset": str(self.reset_at // 1000),
        }
        if not self.ok:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if n != n or n in (float("inf"), float("-inf")):
        return None
    return int(n)


@dataclass
class UsageStatus:
    """Snapshot of a caller's allowance as reported by the usage oracle.

    Fields the oracle did not report stay None and are not enforced.
    """

    membership: str = ""
    remaining: int | None = None
    limit: int | None = None
    burst_remaining: int | None = None
    burst_limit: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageStatus:
        """Accept both snake_case and the ledger's camelCase field names."""

        def pick(*names: str) -> Any:
            for name in names:
                if name in data:
                    return data[name]
            return None

        return cls(
            membership=str(pick("membership") or ""),
            remaining=_as_int(pick("remaining")),
            limit=_as_int(pick("limit")),
            burst_remaining=_as_int(pick("burst_remaining", "burstRemaining")),
            burst_limit=_as_int(pick("burst_limit", "burstLimit")),
        )

    def headers(self) -> dict[str, str]:
        def fmt(v: Any) -> str:
            return "" if v is None else str(v)

        return {
            "X-AI-Remaining": fmt(self.remaining),
            "X-AI-Limit": fmt(self.limit),
            "X-AI-Membership": self.membership,
            "X-AI-Burst-Remaining": fmt(self.burst_remaining),
            "X-AI-Burst-Limit": fmt(self.burst_limit),
        }

    def to_dict(self) -> dict:
        return {
            "membership": self.membership,
            "remaining": self.remaining,
            "limit": self.limit,
            "burstRemaining": self.burst_remaining,
            "burstLimit": self.burst_limit,
        }


# ---------------------------------------------------------------------------
# Provider resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderResolution:
    provider: AIProvider
    source: ProviderSource
    cached_at: float  # resolver clock; 0.0 when not cached


# ---------------------------------------------------------------------------
# Admission key
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdmissionKey:
    """Caller identity used for rate limiting. Never empty."""

    scope: KeyScope
    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("AdmissionKey value must not be empty")

    def __str__(self) -> str:
        return f"{self.scope.value}:{self.value}"


# ---------------------------------------------------------------------------
# Error payload
# ---------------------------------------------------------------------------


@dataclass
class ErrorPayload:
    status: int
    error_code: ErrorCode
    message: str
    retryable: bool
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        """Serialize to the JSON failure body; `details` only when present."""
        body: dict[str, Any] = {
            "ok": False,
            "error_code": self.error_code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


# ---------------------------------------------------------------------------
# Inbound request / pipeline result
# ---------------------------------------------------------------------------


@dataclass
class InboundRequest:
    """Framework-neutral view of an inbound HTTP request.

    Header names are stored lower-cased.
    """

    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    client_host: str | None = None
    body: Any = None

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class EndpointPolicy:
    """Admission parameters for one endpoint class."""

    name: str
    rate_limit_max: int
    window_ms: int = 60_000
    timeout_ms: int = 45_000
    units: int = 1
    write: bool = True  # write endpoints accept POST only, read endpoints GET only
    metered: bool = True  # consults the usage oracle, resolves a provider, charges units
    key_prefix: str = ""  # rate-limit bucket namespace; defaults to `name`
    limiter_fail_open: bool = False
    rate_limited_message: str = "Too many requests. Please wait a moment and try again."

    @property
    def method(self) -> str:
        return "POST" if self.write else "GET"

    def bucket_key(self, key: AdmissionKey) -> str:
        return f"{self.key_prefix or self.name}:{key}"


@dataclass
class AdmissionContext:
    """What an admitted request's upstream operation gets to see.

    `headers` lets the operation add response headers of its own.
    """

    request: InboundRequest
    key: AdmissionKey
    provider: AIProvider | None = None
    usage: UsageStatus | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class GatewayResult:
    """What the pipeline hands back to the HTTP layer."""

    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status < 400
