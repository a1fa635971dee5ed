"""Provider Resolver: decides which upstream AI vendor serves a request.

Precedence, evaluated on every call:
  1. AI_PROVIDER process override (break-glass, never cached)
  2. Settings store value, cached for a bounded TTL
  3. Hard-coded default

A settings store failure of any kind fails open to the default; provider
selection is never a hard failure point. The cache is one shared
resolution per resolver; concurrent refreshes are last-write-wins.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from typing import Protocol

from aigate.core.metrics import PROVIDER_RESOLUTIONS
from aigate.gateway.errors import SettingsStoreError
from aigate.gateway.timeout import with_timeout
from aigate.gateway.types import AIProvider, ProviderResolution, ProviderSource

logger = logging.getLogger(__name__)

OVERRIDE_ENV_VAR = "AI_PROVIDER"
DEFAULT_PROVIDER = AIProvider.GEMINI
CACHE_TTL_SECONDS = 60.0


class SettingsStore(Protocol):
    async def get_ai_defaults(self) -> dict: ...


def read_env_override() -> str | None:
    return os.environ.get(OVERRIDE_ENV_VAR)


class ProviderResolver:
    """Resolves the AI provider with override precedence and a TTL cache.

    Usage:
        resolver = ProviderResolver(store=DatabaseSettingsStore(session_factory))
        provider = await resolver.resolve()
    """

    def __init__(
        self,
        store: SettingsStore | None = None,
        default: AIProvider = DEFAULT_PROVIDER,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        store_timeout_ms: int = 3000,
        override_reader: Callable[[], str | None] = read_env_override,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._default = default
        self._ttl = ttl_seconds
        self._store_timeout_ms = store_timeout_ms
        self._override_reader = override_reader
        self._clock = clock
        self._cache: ProviderResolution | None = None

    async def resolve(self) -> AIProvider:
        return (await self.resolve_with_source()).provider

    async def resolve_with_source(self) -> ProviderResolution:
        override = AIProvider.parse(self._override_reader())
        if override is not None:
            PROVIDER_RESOLUTIONS.labels(source=ProviderSource.ENV.value).inc()
            return ProviderResolution(provider=override, source=ProviderSource.ENV, cached_at=0.0)

        if self._store is None:
            PROVIDER_RESOLUTIONS.labels(source=ProviderSource.DEFAULT.value).inc()
            return ProviderResolution(provider=self._default, source=ProviderSource.DEFAULT, cached_at=0.0)

        now = self._clock()
        cached = self._cache
        if cached is not None and now - cached.cached_at < self._ttl:
            PROVIDER_RESOLUTIONS.labels(source=cached.source.value).inc()
            return cached

        from_store = await self._fetch_from_store()
        if from_store is not None:
            resolution = ProviderResolution(provider=from_store, source=ProviderSource.SETTINGS_STORE, cached_at=now)
        else:
            resolution = ProviderResolution(provider=self._default, source=ProviderSource.DEFAULT, cached_at=now)

        self._cache = resolution
        PROVIDER_RESOLUTIONS.labels(source=resolution.source.value).inc()
        return resolution

    async def _fetch_from_store(self) -> AIProvider | None:
        """Read the store; any failure yields None (fail open)."""
        try:
            defaults = await with_timeout(self._store.get_ai_defaults(), self._store_timeout_ms)
            if not isinstance(defaults, dict):
                raise SettingsStoreError(f"Malformed ai_defaults value: {defaults!r}")
            provider = AIProvider.parse(defaults.get("provider"))
            if provider is None and defaults.get("provider"):
                logger.warning("Settings store provider %r is not a known provider", defaults.get("provider"))
            return provider
        except Exception as e:
            logger.warning("Settings store read failed, using default provider: %s", e)
            return None

    def invalidate(self) -> None:
        """Drop the cached resolution (e.g. after an admin changes the setting)."""
        self._cache = None

    @property
    def cached(self) -> ProviderResolution | None:
        return self._cache
