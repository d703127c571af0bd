"""
Engine and session plumbing for the event table.

The engine is created once per process by the application lifespan and
handed to everything else through app.state; nothing here is global.
Sessions never expire attributes on commit so rows stay readable after the
transaction in async code.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def engine_options(database_url: str, pool_size: int, max_overflow: int) -> dict:
    """Pool sizing applies to server databases only; sqlite keeps its default pool."""
    if make_url(database_url).get_backend_name() == "sqlite":
        return {}
    return {"pool_size": pool_size, "max_overflow": max_overflow, "pool_pre_ping": True}


def create_engine_from_settings(settings) -> AsyncEngine:
    options = engine_options(
        settings.database_url, settings.database_pool_size, settings.database_max_overflow,
    )
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """One unit of work: commit when the block exits cleanly, roll back otherwise."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except BaseException:
        logger.debug("Rolling back database session")
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency form of transaction()."""
    async with transaction(session_factory) as session:
        yield session
