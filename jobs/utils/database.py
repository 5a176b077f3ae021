"""Database helpers for background tasks."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from btc_deposits.config.settings import settings


def create_task_engine(database_url: str | None = None) -> AsyncEngine:
    """
    Create engine for use in tasks.

    NullPool keeps connections from outliving the event loop of the
    worker thread that opened them.
    """
    return create_async_engine(
        database_url or settings.database_url,
        echo=False,
        poolclass=NullPool,
    )


def create_task_session_maker(
    engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Create session maker for tasks."""
    if engine is None:
        engine = create_task_engine()
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
