# docembed/db.py
import logging
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docembed.config import settings
from docembed.models import Base

logger = logging.getLogger(__name__)


def make_engine(url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(url, echo=False, future=True, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False: rows are read after commit outside the greenlet
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


engine = make_engine(settings.database_url)
AsyncSessionLocal = make_session_factory(engine)


async def init_models(bind: AsyncEngine = None) -> None:
    """
    Development helper that creates tables from ORM metadata.
    In production, prefer Alembic migrations instead of create_all().
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/checked")


async def close_engine() -> None:
    """Call this on app shutdown to cleanly dispose connection pool."""
    await engine.dispose()
    logger.info("Database engine disposed")


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


# FastAPI dependency
async def get_async_session(
    factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """
    Use in FastAPI routes like:
        async def endpoint(session: AsyncSession = Depends(get_async_session)):
            ...
    Ensures session is closed and rolled back on error.
    """
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
