"""
Database engine, session factory and declarative base
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from citizen_ledger.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request"""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Session for Celery tasks and scripts.

    Each task runs its coroutine on a fresh event loop, and asyncpg connections
    cannot cross loops, so the engine is created and disposed per task.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )
    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()
