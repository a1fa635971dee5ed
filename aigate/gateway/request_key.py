"""Request Key Resolver: derives the admission key for an inbound request.

Guests and callers whose credential cannot be verified are keyed by client
IP; verified callers by user id. Resolution never fails and never yields an
empty key, so rate limiting always applies.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

import jwt

from aigate.core.security import decode_token
from aigate.gateway.errors import AuthVerificationError
from aigate.gateway.timeout import with_timeout
from aigate.gateway.types import AdmissionKey, InboundRequest, KeyScope

logger = logging.getLogger(__name__)

GUEST_TOKEN = "guest"
UNKNOWN_IP = "unknown"

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    user_id: str | None = None


class AuthVerifier(Protocol):
    async def verify(self, request: InboundRequest) -> AuthResult: ...


def get_bearer_token(request: InboundRequest) -> str | None:
    header = request.header("authorization")
    if not header:
        return None
    m = _BEARER_RE.match(header.strip())
    return m.group(1).strip() if m else None


def get_client_ip(request: InboundRequest) -> str:
    """First X-Forwarded-For entry, then X-Real-IP, then the socket peer."""
    forwarded = request.header("x-forwarded-for")
    if forwarded and forwarded.strip():
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.header("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return request.client_host or UNKNOWN_IP


class JwtAuthVerifier:
    """Verifies HS-signed access tokens; `sub` is the user id."""

    async def verify(self, request: InboundRequest) -> AuthResult:
        token = get_bearer_token(request)
        if not token or token == GUEST_TOKEN:
            return AuthResult(ok=False)
        try:
            payload = decode_token(token)
        except jwt.PyJWTError as e:
            raise AuthVerificationError(f"Invalid or expired token: {e}") from e

        if payload.get("type", "access") != "access":
            raise AuthVerificationError("Invalid token type")
        user_id = payload.get("sub")
        if not user_id:
            raise AuthVerificationError("Invalid token payload")
        return AuthResult(ok=True, user_id=str(user_id))


class RequestKeyResolver:
    """Resolves `user:<id>` or `ip:<client-ip>` for an inbound request."""

    def __init__(self, verifier: AuthVerifier, timeout_ms: int = 5000):
        self._verifier = verifier
        self._timeout_ms = timeout_ms

    async def resolve(self, request: InboundRequest) -> AdmissionKey:
        ip_key = AdmissionKey(scope=KeyScope.IP, value=get_client_ip(request))

        token = get_bearer_token(request)
        if not token or token == GUEST_TOKEN:
            return ip_key

        try:
            result = await with_timeout(self._verifier.verify(request), self._timeout_ms)
        except Exception as e:
            logger.info("Auth verification failed, keying by IP: %s", e)
            return ip_key

        if not result.ok or not result.user_id:
            return ip_key
        return AdmissionKey(scope=KeyScope.USER, value=result.user_id)
