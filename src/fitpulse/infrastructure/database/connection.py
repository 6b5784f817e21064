# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Event store database connection management using SQLAlchemy async.

Uses SQLAlchemy 2.0 async API with the asyncpg driver in production. Any
async dialect works; the test-suite runs against ``sqlite+aiosqlite``.

A DatabaseManager owns one engine and sessionmaker. The API process keeps
one manager for its lifetime (init_database/close_database); each Dramatiq
worker thread gets its own manager bound to that thread's event loop
(get_worker_db_manager).

Example:
    from fitpulse.infrastructure.database.connection import init_database

    # Initialize at application startup
    db_manager = await init_database(settings)

    async with db_manager.session() as session:
        result = await session.execute(select(AnalyticsEvent))
        events = result.scalars().all()
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from fitpulse.infrastructure.database.models import Base

if TYPE_CHECKING:
    from fitpulse.core.config.settings import Settings

logger = logging.getLogger(__name__)

# Module-level state for the API process connection
_db_manager: Optional["DatabaseManager"] = None


class DatabaseError(Exception):
    """Base exception for database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the database error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


def _engine_options(url: str, pool_size: int, max_overflow: int, echo: bool) -> dict[str, Any]:
    """Build create_async_engine keyword arguments for the URL's backend."""
    options: dict[str, Any] = {"echo": echo}
    if make_url(url).get_backend_name() == "sqlite":
        # One shared connection so in-memory databases survive across sessions
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
    return options


class DatabaseManager:
    """Owns an async engine and hands out transactional sessions.

    Attributes:
        url: Database URL the engine was created from.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        echo: bool = False,
    ) -> None:
        """Create the engine and sessionmaker.

        Args:
            url: Async SQLAlchemy database URL.
            pool_size: Connection pool size (ignored for SQLite).
            max_overflow: Maximum overflow connections (ignored for SQLite).
            echo: Log SQL statements.

        Raises:
            DatabaseError: If engine creation fails.
        """
        self.url = url
        try:
            self._engine: AsyncEngine = create_async_engine(
                url, **_engine_options(url, pool_size, max_overflow, echo)
            )
        except (SQLAlchemyError, ValueError) as e:
            raise DatabaseError("Failed to initialize database connection", e) from e

        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "DatabaseManager":
        """Create a manager from application settings."""
        return cls(
            settings.database.url,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            echo=settings.debug and settings.log_level == "DEBUG",
        )

    @property
    def engine(self) -> AsyncEngine:
        """The SQLAlchemy async engine."""
        return self._engine

    @property
    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        """The SQLAlchemy async sessionmaker."""
        return self._sessionmaker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Get an async session scoped to one transaction.

        The session is committed on success and rolled back on exception.

        Yields:
            AsyncSession for database operations.

        Raises:
            DatabaseError: If a database operation fails.

        Example:
            async with db_manager.session() as session:
                session.add(report)
        """
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError("Database operation failed", e) from e
            except BaseException:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        """Drop all tables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def check_connection(self) -> bool:
        """Check if the database is reachable.

        Returns:
            True if the database is reachable, False otherwise.
        """
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("Database connectivity check failed: %s", e)
            return False

    async def close(self) -> None:
        """Dispose of the engine and all pooled connections."""
        await self._engine.dispose()


async def init_database(settings: "Settings", create_schema: bool = True) -> DatabaseManager:
    """Initialize the process-wide database manager.

    This should be called once at application startup.

    Args:
        settings: Application settings containing database configuration.
        create_schema: Create missing tables on startup.

    Returns:
        The initialized DatabaseManager.

    Raises:
        DatabaseError: If connection pool creation or schema creation fails.
    """
    global _db_manager

    manager = DatabaseManager.from_settings(settings)
    if create_schema:
        try:
            await manager.create_all()
        except SQLAlchemyError as e:
            await manager.close()
            raise DatabaseError("Failed to create event store schema", e) from e

    _db_manager = manager
    logger.info("Database initialized: %s", make_url(settings.database.url).render_as_string())
    return manager


async def close_database() -> None:
    """Close the process-wide database manager."""
    global _db_manager

    if _db_manager is not None:
        await _db_manager.close()
        _db_manager = None


def get_database_manager() -> DatabaseManager:
    """Get the process-wide database manager.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _db_manager is None:
        raise DatabaseError("Database not initialized. Call init_database() first.")
    return _db_manager


# =============================================================================
# Worker thread managers
# =============================================================================

_thread_local_manager = threading.local()


def get_worker_db_manager() -> DatabaseManager:
    """Get the DatabaseManager for the current Dramatiq worker thread.

    SQLAlchemy async engines are bound to the event loop they were first
    used on, and each worker thread runs its own persistent loop
    (see tasks.base.run_async), so every thread gets its own manager.

    Returns:
        Thread-local DatabaseManager instance.
    """
    manager = getattr(_thread_local_manager, "db_manager", None)

    if manager is None:
        from fitpulse.core.config import get_settings

        manager = DatabaseManager.from_settings(get_settings())
        _thread_local_manager.db_manager = manager

    return manager


def reset_worker_db_manager() -> None:
    """Forget the current thread's manager.

    Called when a thread gets a fresh event loop; the next call to
    get_worker_db_manager() builds a new engine on that loop.
    """
    _thread_local_manager.db_manager = None
