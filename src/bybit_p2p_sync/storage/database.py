"""Database connection and session management.

This module provides the async engine, session factory and the
startup connection check (with bounded retries) for the storage layer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bybit_p2p_sync.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_RETRIES = 5
DEFAULT_CONNECT_RETRY_DELAY_SECONDS = 5.0


class DatabaseConnectionError(Exception):
    """Raised when the database stays unreachable after all attempts."""


def normalize_async_database_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        logger.warning(
            "Database URL uses sync dialect 'postgresql://'; using async driver 'postgresql+asyncpg://'."
        )
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an asynchronous SQLAlchemy engine.

    Args:
        database_url: Database connection URL (e.g., postgresql+asyncpg://...).
        **kwargs: Additional engine options.
    """
    return create_async_engine(normalize_async_database_url(database_url), **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an asynchronous session factory."""
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create all tables defined in the models."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized (async)")


class DatabaseManager:
    """Owns the process-wide async engine and hands out sessions.

    The engine is created lazily and shared for the service lifetime;
    pooling is left to the driver.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        """Initialize database manager.

        Args:
            database_url: Database connection URL.
            pool_size: Connection pool size (ignored for SQLite).
            max_overflow: Maximum overflow connections (ignored for SQLite).
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def _get_engine(self) -> AsyncEngine:
        """Get or create the asynchronous engine."""
        if self._engine is None:
            kwargs: dict[str, Any] = {"echo": self._echo}
            if not self.database_url.startswith("sqlite"):
                kwargs["pool_size"] = self._pool_size
                kwargs["max_overflow"] = self._max_overflow
            self._engine = create_async_db_engine(self.database_url, **kwargs)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an asynchronous session as a context manager.

        Commits on clean exit, rolls back and re-raises otherwise.
        """
        if self._session_factory is None:
            self._session_factory = create_async_session_factory(self._get_engine())

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def ping(self) -> None:
        """Run a trivial query to prove the database is reachable."""
        async with self._get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def connect_with_retry(
        self,
        *,
        attempts: int = DEFAULT_CONNECT_RETRIES,
        delay_seconds: float = DEFAULT_CONNECT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Verify connectivity, retrying with a fixed backoff.

        Raises:
            DatabaseConnectionError: If every attempt fails.
        """
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self.ping()
                logger.info("Connected to database")
                return
            except Exception as e:
                last_error = e
                logger.error(
                    "Database connection attempt %d/%d failed: %s", attempt, attempts, e
                )
                if attempt < attempts:
                    logger.info("Retrying database connection in %.1f seconds...", delay_seconds)
                    await asyncio.sleep(delay_seconds)

        raise DatabaseConnectionError(
            f"Could not connect to database after {attempts} attempts"
        ) from last_error

    async def init_schema_async(self) -> None:
        """Initialize database schema asynchronously."""
        await init_async_db(self._get_engine())

    async def dispose_async(self) -> None:
        """Dispose of all async database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("Async database connections disposed")
