"""Boundary error types and the upstream failure classifier.

Each external collaborator raises one of the typed errors below. Whatever
reaches the pipeline is converted exactly once, by `classify()`, into the
public error contract. The decision table is ordered; the first matching
rule wins because messages can match several patterns.
"""

from __future__ import annotations

import re
import traceback
from typing import Any

from aigate.core.config import settings
from aigate.gateway.types import ErrorCode, ErrorPayload

TIMEOUT_CODE = "TIMEOUT"

# Number of stack lines kept in non-production details
_STACK_LINES = 6


class GatewayError(Exception):
    """Base class for errors raised at a collaborator boundary."""

    code: str = ""
    status: int | None = None


class GatewayTimeout(GatewayError):
    """An awaited operation did not settle before its deadline."""

    code = TIMEOUT_CODE

    def __init__(self, timeout_ms: int):
        super().__init__(f"Request timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class AuthVerificationError(GatewayError):
    """Bearer credential could not be verified."""


class SettingsStoreError(GatewayError):
    """Settings store missing, unreachable, or returned a malformed value."""


class UsageOracleError(GatewayError):
    """The usage ledger answered with a failure status."""

    def __init__(self, status: int, message: str = ""):
        super().__init__(message or f"Usage oracle returned {status}")
        self.status = status


class VendorError(GatewayError):
    """An upstream AI vendor rejected or failed the call."""

    def __init__(self, message: str, status_code: int = 0, vendor: str = ""):
        super().__init__(message)
        self.status = status_code or None
        self.vendor = vendor


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_TIMEOUT_RE = re.compile(r"timed out", re.IGNORECASE)
_LIMIT_RE = re.compile(r"quota|resource[_\s-]?exhausted|rate limit|too many requests", re.IGNORECASE)
_QUOTA_RE = re.compile(r"quota|resource[_\s-]?exhausted", re.IGNORECASE)
_SAFETY_RE = re.compile(r"safety|blocked by safety|finishreason:\s*safety", re.IGNORECASE)
_CONFIG_RE = re.compile(r"api key|not configured|unauthorized|forbidden", re.IGNORECASE)
_UNAUTHORIZED_RE = re.compile(r"unauthorized", re.IGNORECASE)


def _message_of(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error or "Request failed")


def _code_of(error: Any) -> str:
    return str(getattr(error, "code", "") or "")


def classify(error: Any) -> ErrorPayload:
    """Map an arbitrary upstream failure onto the public error contract.

    Pure: the same input always yields the same status/code/retryable.
    `details` is never set here; see `error_details()`.
    """
    msg = _message_of(error)
    code = _code_of(error)

    if code == TIMEOUT_CODE or isinstance(error, GatewayTimeout) or _TIMEOUT_RE.search(msg):
        return ErrorPayload(504, ErrorCode.TIMEOUT, "The request timed out. Please try again.", True)

    if _LIMIT_RE.search(msg):
        if _QUOTA_RE.search(msg):
            return ErrorPayload(
                429,
                ErrorCode.QUOTA_EXCEEDED,
                "AI quota has been temporarily exceeded. Please try again later.",
                True,
            )
        return ErrorPayload(
            429,
            ErrorCode.PROVIDER_RATE_LIMIT,
            "AI provider is rate limiting requests. Please try again shortly.",
            True,
        )

    if _SAFETY_RE.search(msg):
        return ErrorPayload(
            400,
            ErrorCode.SAFETY_BLOCK,
            "This request was blocked by safety filters. Please rephrase and try again.",
            False,
        )

    if _CONFIG_RE.search(msg):
        if _UNAUTHORIZED_RE.search(msg):
            return ErrorPayload(401, ErrorCode.UNAUTHORIZED, "Unauthorized.", False)
        return ErrorPayload(500, ErrorCode.CONFIG_ERROR, "Server configuration error.", False)

    return ErrorPayload(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred. Please try again.", True)


def error_details(error: Any) -> dict[str, Any] | None:
    """Debug details for non-production responses; None in production.

    Only a whitelisted, truncated subset of the error is exposed.
    """
    if settings.is_production:
        return None
    if not isinstance(error, BaseException):
        return {"name": "Error", "message": _message_of(error)}

    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return {
        "name": type(error).__name__,
        "message": _message_of(error),
        "status": getattr(error, "status", None),
        "stack": "\n".join(stack.strip().splitlines()[:_STACK_LINES]),
    }


def preview_details(**fields: Any) -> dict[str, Any] | None:
    """Structured non-production details (e.g. limits at the time of denial)."""
    if settings.is_production:
        return None
    return fields
