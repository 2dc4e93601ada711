# backend/authguard/db/session.py
import contextlib
import logging
from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from authguard.core.config import settings
from authguard.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

async_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite gets NullPool and a busy timeout for concurrent writers."""
    if db_url.startswith("sqlite"):
        return create_async_engine(
            db_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_async_engine(db_url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )


def init_db_resources() -> None:
    """Initialize the async database engine and session maker."""
    global async_engine, AsyncSessionLocal

    if async_engine is not None:
        logger.info("Database resources already initialized.")
        return

    db_url = settings.ASYNC_SQLALCHEMY_DATABASE_URL
    if not db_url:
        raise ValueError("ASYNC_SQLALCHEMY_DATABASE_URL is empty or None after computation.")

    try:
        engine = build_engine(db_url, echo=settings.DB_ECHO)
    except Exception as e:
        logger.critical(f"CRITICAL: Failed to initialize async database engine: {e}", exc_info=True)
        raise RuntimeError(f"Failed to initialize async database engine: {e}") from e

    async_engine = engine
    AsyncSessionLocal = build_session_factory(engine)
    logger.info(f"Async database engine ({db_url.split('@')[0]}@...) configured successfully.")


async def check_db_connection() -> None:
    if async_engine is None:
        raise RuntimeError("Database engine is not initialized.")
    async with async_engine.connect() as connection:
        await connection.execute(text("SELECT 1"))


async def dispose_db_resources() -> None:
    global async_engine, AsyncSessionLocal
    if async_engine:
        logger.info("Disposing async database engine.")
        await async_engine.dispose()
        async_engine = None
        AsyncSessionLocal = None
    else:
        logger.info("No async database engine to dispose.")


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    if AsyncSessionLocal is None:
        logger.critical("AsyncSessionLocal is not initialized.")
        raise RuntimeError(
            "AsyncSessionLocal is not initialized. Call init_db_resources() first."
        )
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            logger.error("Async DB session rolled back due to an exception.", exc_info=True)
            raise


# ``async with session_scope() as db:`` for callers outside a request framework
session_scope = contextlib.asynccontextmanager(get_async_session)


@contextlib.asynccontextmanager
async def fail_closed(db: AsyncSession, operation: str) -> AsyncGenerator[None, None]:
    """
    Deny on storage failure.

    Any SQLAlchemyError raised inside the block rolls the session back and is
    re-raised as StorageUnavailableError, so no caller can mistake a failed
    lookup for "not locked" or "not blocked".
    """
    try:
        yield
    except SQLAlchemyError as e:
        try:
            await db.rollback()
        except SQLAlchemyError:
            logger.error("Rollback failed after storage error.", exc_info=True)
        logger.error(f"Storage failure during {operation}: {e}", exc_info=True)
        raise StorageUnavailableError() from e
