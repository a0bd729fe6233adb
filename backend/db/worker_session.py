"""Worker-safe database sessions for Celery tasks.

Creates a fresh async engine per task run to avoid the 'Future attached
to a different loop' error when asyncpg connections are shared across
the event loops each Celery task creates.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings


@asynccontextmanager
async def worker_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a session factory on a task-scoped engine.

    The retry scheduler opens one session per resubmitted transaction,
    so workers get the factory rather than a single session.

    Usage:
        async with worker_session_factory() as factory:
            async with factory() as session:
                ...
    """
    settings = get_settings()
    kwargs = {"echo": False}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=settings.RETRY_WORKER_CONCURRENCY, max_overflow=2, pool_recycle=300)
    engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()
