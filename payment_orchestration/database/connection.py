"""Database connection and session management."""
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from payment_orchestration.config import get_settings
from payment_orchestration.database.models import Base

T = TypeVar("T")

# Attempts for a unit of work that lost a version race to another writer
WRITE_ATTEMPTS = 5

# Global engine and session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_from_url(url: str, echo: bool = False) -> AsyncEngine:
    """
    Build an async engine for ``url``.

    Pool sizing only applies to server databases; SQLite picks its own pool.
    """
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)

    settings = get_settings()
    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the options every ledger component expects."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the database engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_from_url(settings.database_url, echo=settings.database_echo)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    attempts: int = WRITE_ATTEMPTS,
) -> T:
    """
    Run ``work`` in its own session and database transaction.

    Versioned rows are written with ``UPDATE ... WHERE version_id = :seen``.
    When another writer committed first the flush raises ``StaleDataError``
    and the whole unit of work is re-run on fresh rows.

    Args:
        session_factory: Session factory to open sessions from
        work: Coroutine function doing the reads and writes
        attempts: Maximum number of runs

    Returns:
        Whatever ``work`` returned on the run that committed

    Raises:
        StaleDataError: If every attempt lost the race
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(StaleDataError),
        stop=stop_after_attempt(attempts),
        wait=wait_random(min=0, max=0.05),
        reraise=True,
    ):
        with attempt:
            async with session_factory() as session:
                async with session.begin():
                    outcome = await work(session)
    return outcome


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist. Production
    deployments run the Alembic revisions instead.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections and dispose of the engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
