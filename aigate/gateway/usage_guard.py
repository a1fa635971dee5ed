"""Usage Guard: quota enforcement against the usage oracle.

Strategy: check-then-increment.
  - admit() only reads the caller's allowance, before the upstream call.
  - charge() runs after a successful upstream call as a detached task with
    its own short deadline. It is allowed to fail silently: the user-visible
    request already succeeded, and accounting must never block or fail it.
  - Nothing is charged on any failure path, so a request is charged at
    most once.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from aigate.core.metrics import USAGE_INCREMENT_FAILURES
from aigate.gateway.errors import UsageOracleError, classify, error_details, preview_details
from aigate.gateway.timeout import with_timeout
from aigate.gateway.types import ErrorCode, ErrorPayload, InboundRequest, UsageStatus
from aigate.gateway.usage_oracle import UsageOracle

logger = logging.getLogger(__name__)

# Oracle 429 messages that point at the short window rather than the daily quota
_BURST_RE = re.compile(r"burst|per minute|per-minute|too many requests|rate limit", re.IGNORECASE)

# Retry-After for burst denials, which carry no window of their own
BURST_RETRY_AFTER_SECONDS = 60


def seconds_until_utc_midnight(now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1, math.ceil((midnight - now).total_seconds()))


def _burst_retry_after() -> dict[str, str]:
    return {"Retry-After": str(BURST_RETRY_AFTER_SECONDS)}


def _quota_retry_after() -> dict[str, str]:
    return {"Retry-After": str(seconds_until_utc_midnight())}


@dataclass
class Admitted:
    usage: UsageStatus
    ok: bool = True


@dataclass
class Denied:
    error: ErrorPayload
    headers: dict[str, str] = field(default_factory=dict)
    ok: bool = False

    @property
    def status(self) -> int:
        return self.error.status


class UsageGuard:
    """Admits or denies requests based on the oracle's allowance snapshot."""

    def __init__(
        self,
        oracle: UsageOracle,
        timeout_ms: int = 8000,
        increment_timeout_ms: int = 2000,
    ):
        self._oracle = oracle
        self._timeout_ms = timeout_ms
        self._increment_timeout_ms = increment_timeout_ms
        self._pending: set[asyncio.Task] = set()

    async def admit(self, request: InboundRequest, units: int = 1) -> Admitted | Denied:
        try:
            usage = await with_timeout(self._oracle.status(request), self._timeout_ms)
        except UsageOracleError as e:
            return self._from_oracle_status(e)
        except Exception as e:
            mapped = classify(e)
            if mapped.error_code == ErrorCode.TIMEOUT:
                logger.warning("Usage oracle timed out after %dms", self._timeout_ms)
                return Denied(
                    ErrorPayload(
                        504,
                        ErrorCode.TIMEOUT,
                        "Usage check timed out. Please try again.",
                        True,
                        details=error_details(e),
                    )
                )
            logger.error("Usage oracle unavailable: %s", e, exc_info=True)
            return Denied(
                ErrorPayload(
                    503,
                    ErrorCode.USAGE_UNAVAILABLE,
                    "Usage status unavailable.",
                    True,
                    details=error_details(e),
                )
            )

        # Burst is checked first: it is the transient, more actionable limit.
        if usage.burst_remaining is not None and usage.burst_remaining < units:
            return Denied(
                ErrorPayload(
                    429,
                    ErrorCode.RATE_LIMITED,
                    "Too many requests. Please wait a moment and try again.",
                    True,
                    details=preview_details(
                        burst_remaining=usage.burst_remaining,
                        burst_limit=usage.burst_limit,
                        units=units,
                        membership=usage.membership,
                    ),
                ),
                _burst_retry_after(),
            )

        if usage.remaining is not None and usage.remaining < units:
            return Denied(
                ErrorPayload(
                    429,
                    ErrorCode.QUOTA_EXCEEDED,
                    "Daily AI usage limit reached. Upgrade or wait for your quota to reset.",
                    True,
                    details=preview_details(
                        remaining=usage.remaining,
                        limit=usage.limit,
                        units=units,
                        membership=usage.membership,
                    ),
                ),
                _quota_retry_after(),
            )

        return Admitted(usage=usage)

    @staticmethod
    def _from_oracle_status(e: UsageOracleError) -> Denied:
        status = e.status or 503
        message = str(e) or "Usage status unavailable."
        details = preview_details(status=e.status, error=str(e))

        if status == 401:
            return Denied(ErrorPayload(401, ErrorCode.UNAUTHORIZED, "Unauthorized.", False, details=details))
        if status == 429:
            if _BURST_RE.search(message):
                return Denied(
                    ErrorPayload(
                        429,
                        ErrorCode.RATE_LIMITED,
                        "Too many requests. Please wait a moment and try again.",
                        True,
                        details=details,
                    ),
                    _burst_retry_after(),
                )
            return Denied(
                ErrorPayload(
                    429,
                    ErrorCode.QUOTA_EXCEEDED,
                    "Daily AI usage limit reached. Upgrade or wait for your quota to reset.",
                    True,
                    details=details,
                ),
                _quota_retry_after(),
            )
        if status == 503:
            return Denied(
                ErrorPayload(
                    503,
                    ErrorCode.SERVICE_UNAVAILABLE,
                    "Usage service is temporarily unavailable.",
                    True,
                    details=details,
                )
            )
        return Denied(
            ErrorPayload(
                status if status >= 500 else 503,
                ErrorCode.USAGE_UNAVAILABLE,
                "Usage status unavailable.",
                True,
                details=details,
            )
        )

    # ------------------------------------------------------------------
    # Post-success accounting
    # ------------------------------------------------------------------

    def charge(self, request: InboundRequest, units: int = 1) -> asyncio.Task:
        """Schedule the best-effort increment and return immediately."""
        task = asyncio.create_task(self._increment(request, units))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _increment(self, request: InboundRequest, units: int) -> None:
        try:
            await with_timeout(self._oracle.increment(request, units), self._increment_timeout_ms)
        except Exception as e:
            USAGE_INCREMENT_FAILURES.inc()
            logger.warning("Usage increment failed (ignored): %s", e)

    async def drain(self) -> None:
        """Wait for outstanding increments (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
