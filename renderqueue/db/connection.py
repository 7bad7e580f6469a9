"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from renderqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _on_sqlite_connect(dbapi_connection: Any, connection_record: Any) -> None:
    """
    Enable WAL and take over transaction control from the driver.

    The sqlite driver does not emit BEGIN before DDL, which would leave a
    failing migration half-applied; ``_on_sqlite_begin`` emits it instead.
    """
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def _on_sqlite_begin(connection: Any) -> None:
    # "IMMEDIATE" takes the write lock up front; callers opt in per connection
    mode = connection.get_execution_options().get("sqlite_begin", "DEFERRED")
    connection.exec_driver_sql(f"BEGIN {mode}")


class Database:
    """
    Owns the async engine and session factory.

    Constructed once at startup and handed to the worker and the API;
    ``dispose()`` must be awaited on shutdown.
    """

    def __init__(
        self,
        database_url: str | None = None,
        settings: Settings | None = None,
        use_null_pool: bool = False,
    ):
        """
        Create the engine for the given URL.

        Args:
            database_url: SQLAlchemy async URL. Defaults to the configured URL.
            settings: Optional settings override.
            use_null_pool: Disable connection pooling (useful in tests).
        """
        settings = settings or get_settings()
        self.url = database_url or settings.database_url

        engine_kwargs: dict[str, Any] = {
            "echo": settings.log_level.upper() == "DEBUG",
        }
        if use_null_pool:
            engine_kwargs["poolclass"] = NullPool
        if _is_sqlite(self.url):
            engine_kwargs["connect_args"] = {
                "timeout": settings.database_busy_timeout_seconds,
            }
        else:
            engine_kwargs["pool_pre_ping"] = True
            if not use_null_pool:
                engine_kwargs["pool_size"] = settings.database_pool_size
                engine_kwargs["max_overflow"] = settings.database_max_overflow

        self.engine: AsyncEngine = create_async_engine(self.url, **engine_kwargs)
        if _is_sqlite(self.url):
            event.listen(self.engine.sync_engine, "connect", _on_sqlite_connect)
            event.listen(self.engine.sync_engine, "begin", _on_sqlite_begin)

        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database engine created", extra={"dialect": self.engine.dialect.name})

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Open a session whose work is committed on exit and rolled back on error.

        Yields:
            AsyncSession: An async database session.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self.engine.dispose()
        logger.info("Database connection closed")
