from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import Settings
from .base import Base


def create_engine(settings: Settings) -> AsyncEngine:
    options = {"echo": settings.DEBUG, "future": True}
    if settings.DATABASE_URL.startswith("postgresql"):
        options.update(
            pool_pre_ping=True,  # Check connection liveness before checkout
            pool_size=20,
            max_overflow=10,
        )
    return create_async_engine(settings.DATABASE_URL, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine):
    """Create missing tables. Schema migrations are owned by the record store."""
    from .. import models  # noqa: F401  registers mappers

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
