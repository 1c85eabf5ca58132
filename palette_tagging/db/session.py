"""Database engine and session management."""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from palette_tagging.config import get_settings

settings = get_settings()

engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def create_worker_session_maker() -> tuple:
    """
    Build an engine/session maker pair for use outside the API process.

    Celery tasks run each coroutine in a fresh event loop, so pooled
    connections cannot be shared between invocations.
    """
    worker_engine = create_async_engine(settings.database_url, poolclass=NullPool)
    return worker_engine, async_sessionmaker(
        worker_engine, class_=AsyncSession, expire_on_commit=False
    )


async def init_db() -> None:
    """Create all tables if they don't exist."""
    from palette_tagging.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI routes."""
    async with async_session_maker() as session:
        yield session
