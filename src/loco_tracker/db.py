"""Database engine construction.

Engines are built explicitly and handed to ObservationStore; nothing here
holds a process-wide connection.
"""

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from loco_tracker.config import settings
from loco_tracker.models import Base


def build_engine(url: str | None = None, *, echo: bool | None = None, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, defaulting to the configured database."""
    return create_async_engine(
        url or settings.database_url,
        echo=settings.database_echo if echo is None else echo,
        pool_pre_ping=True,
        **kwargs,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping(engine: AsyncEngine) -> None:
    """Round-trip a trivial query; raises on connection problems."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
