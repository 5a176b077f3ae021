"""
Database configuration.

Async SQLAlchemy engine and session factory for the deposit monitor.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from btc_deposits.config.settings import settings


def create_engine(database_url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Create async engine.

    Args:
        database_url: Database URL (defaults to settings.database_url)
        echo: Echo SQL statements (defaults to settings.database_echo)

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.database_url
    kwargs = {"echo": settings.database_echo if echo is None else echo}
    if url.startswith("postgresql"):
        kwargs.update(pool_size=10, max_overflow=5, pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create session maker bound to engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_engine = create_engine()
async_session_maker = create_session_maker(async_engine)
