"""Usage oracle clients: the source of truth for a caller's allowance.

Two implementations share one interface:
  - HttpUsageOracle: talks to the usage ledger service over HTTP.
  - LocalUsageOracle: per-process safety cap used when no ledger is
    configured (per-IP daily cap + per-minute burst). Best-effort only;
    instances do not share counters.

`status()` raises UsageOracleError when the ledger answers with a failure
status, and lets transport errors propagate unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

import httpx

from aigate.gateway.errors import UsageOracleError
from aigate.gateway.request_key import get_client_ip
from aigate.gateway.types import InboundRequest, UsageStatus

logger = logging.getLogger(__name__)


class UsageOracle(Protocol):
    async def status(self, request: InboundRequest) -> UsageStatus: ...

    async def increment(self, request: InboundRequest, units: int) -> None: ...


# ---------------------------------------------------------------------------
# HTTP ledger client
# ---------------------------------------------------------------------------


class HttpUsageOracle:
    """Client for the usage ledger.

    Endpoints:
        GET  {base_url}/status     -> {"ok": true, "membership": ..., "remaining": ..., ...}
        POST {base_url}/increment  <- {"units": n}

    The caller's Authorization header and client IP are forwarded so the
    ledger can identify the caller itself.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self, request: InboundRequest) -> dict[str, str]:
        headers = {"X-Forwarded-For": get_client_ip(request)}
        auth = request.header("authorization")
        if auth:
            headers["Authorization"] = auth
        if self.api_key:
            headers["X-Usage-Service-Key"] = self.api_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def status(self, request: InboundRequest) -> UsageStatus:
        async with self._client() as client:
            resp = await client.get(f"{self.base_url}/status", headers=self._headers(request))

        data = self._json(resp)
        if resp.status_code >= 400 or data.get("ok") is False:
            status = int(data.get("status") or resp.status_code or 503)
            if status < 400:
                status = 503
            raise UsageOracleError(status, str(data.get("error") or data.get("message") or ""))

        return UsageStatus.from_dict(data)

    async def increment(self, request: InboundRequest, units: int) -> None:
        async with self._client() as client:
            resp = await client.post(
                f"{self.base_url}/increment",
                json={"units": units},
                headers=self._headers(request),
            )
        if resp.status_code >= 400:
            raise UsageOracleError(resp.status_code, "Usage increment rejected")

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# In-process fallback
# ---------------------------------------------------------------------------

LOCAL_DAILY_LIMIT = 25
LOCAL_BURST_LIMIT = 10
LOCAL_MEMBERSHIP = "free"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalUsageOracle:
    """Per-IP daily and per-minute caps held in process memory."""

    def __init__(
        self,
        daily_limit: int = LOCAL_DAILY_LIMIT,
        burst_limit: int = LOCAL_BURST_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.daily_limit = daily_limit
        self.burst_limit = burst_limit
        self._clock = clock
        self._daily: dict[str, int] = {}
        self._burst: dict[str, int] = {}

    def _keys(self, request: InboundRequest) -> tuple[str, str]:
        now = self._clock()
        identity = f"ip:{get_client_ip(request)}"
        day_key = f"{now:%Y-%m-%d}:{identity}"
        minute_key = f"{now:%Y-%m-%dT%H:%M}:{identity}"
        return day_key, minute_key

    async def status(self, request: InboundRequest) -> UsageStatus:
        day_key, minute_key = self._keys(request)
        used = self._daily.get(day_key, 0)
        used_burst = self._burst.get(minute_key, 0)
        return UsageStatus(
            membership=LOCAL_MEMBERSHIP,
            remaining=max(0, self.daily_limit - used),
            limit=self.daily_limit,
            burst_remaining=max(0, self.burst_limit - used_burst),
            burst_limit=self.burst_limit,
        )

    async def increment(self, request: InboundRequest, units: int) -> None:
        day_key, minute_key = self._keys(request)
        self._prune(day_key, minute_key)
        self._daily[day_key] = self._daily.get(day_key, 0) + units
        self._burst[minute_key] = self._burst.get(minute_key, 0) + units

    def _prune(self, day_key: str, minute_key: str) -> None:
        """Forget counters from previous days / minutes."""
        day_prefix = day_key.split(":", 1)[0]
        minute_prefix = minute_key.split(":ip:", 1)[0]
        self._daily = {k: v for k, v in self._daily.items() if k.startswith(day_prefix)}
        self._burst = {k: v for k, v in self._burst.items() if k.startswith(minute_prefix)}
