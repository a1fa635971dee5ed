"""Settings store backed by the `app_settings` table."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aigate.gateway.errors import SettingsStoreError
from aigate.models.app_setting import AppSetting

logger = logging.getLogger(__name__)

AI_DEFAULTS_KEY = "ai_defaults"


class DatabaseSettingsStore:
    """Reads `app_settings[key='ai_defaults'].value`, e.g. {"provider": "openai"}."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_ai_defaults(self) -> dict:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(AppSetting.value).where(AppSetting.key == AI_DEFAULTS_KEY))
                value = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise SettingsStoreError(f"app_settings read failed: {e}") from e

        if value is None:
            return {}
        if not isinstance(value, dict):
            raise SettingsStoreError(f"app_settings[{AI_DEFAULTS_KEY}] is not an object")
        return value

    async def set_ai_defaults(self, provider: str) -> None:
        """Upsert the default provider (admin tooling)."""
        async with self._session_factory() as session:
            row = await session.get(AppSetting, AI_DEFAULTS_KEY)
            if row is None:
                session.add(AppSetting(key=AI_DEFAULTS_KEY, value={"provider": provider}))
            else:
                row.value = {**(row.value or {}), "provider": provider}
            await session.commit()
        logger.info("AI default provider set to %s", provider)
