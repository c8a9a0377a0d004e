"""
Database engine, session factory and declarative base.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from freight.core.config import settings

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
    """FastAPI dependency - one session per request"""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Session for Celery tasks.

    Each task runs in its own event loop (see workers.tasks.run_async), so the
    engine is created here and disposed afterwards instead of reusing the
    module-level one, which would be bound to another loop.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )
    task_session_maker = async_sessionmaker(bind=task_engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()
