"""
Database engine/session helpers and the declarative base.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from api.config import Settings


class Base(DeclarativeBase):
    pass


def generate_uuid() -> str:
    return str(uuid.uuid4())


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine; pool sizing only applies to real server backends.
    """
    kwargs = {"echo": settings.db_echo}
    if not settings.db_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_pool_size // 2,
            pool_recycle=3600,
            pool_pre_ping=True,
        )
    return create_async_engine(settings.db_url, **kwargs)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Transactional scope: commit on success, roll back (and re-raise) on any error.
    """
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """
    Create any missing tables.
    """
    # Make sure every model is registered on the metadata.
    import api.user.schemas  # noqa: F401
    import api.idp.schemas  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized")
