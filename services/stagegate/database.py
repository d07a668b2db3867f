"""
Database Configuration Module

Async engine and session factory are built from Settings instead of being
created at import time, so the API, the Celery worker and the tests can each
point at their own database.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from settings import Settings

# Base for models
Base = declarative_base()


def build_engine(settings: Settings, **engine_kwargs) -> AsyncEngine:
    """Create the async engine for settings.database_url."""
    options = {"echo": False, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options["pool_recycle"] = 3600  # Recycle connections after 1 hour
    options.update(engine_kwargs)
    return create_async_engine(settings.database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables. Used on application startup and in tests."""
    import models  # noqa: F401  registers the mappers on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
