from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from aigate.core.config import settings

engine = create_async_engine(settings.postgres_url, pool_pre_ping=True, pool_size=5, max_overflow=5)
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema() -> None:
    """Create the settings tables if they do not exist yet."""
    from aigate.db.base import Base
    from aigate.models import AppSetting  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
