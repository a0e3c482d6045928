"""
Database handle and session scoping.

There is no module-level engine. A ``Database`` is constructed once
(at application startup, or per test) and passed to whatever needs it.
Sessions are acquired per logical operation with ``async with`` and are
always returned to the pool, including on error paths.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from fastapi import Request
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from db.base import Base

logger = structlog.get_logger(__name__)


class Database:
    """
    Explicitly constructed store handle (engine + session factory).

    Usage:
        database = Database(settings.database_url)
        async with database.transaction() as session:
            ...  # committed on success, rolled back on any exception
    """

    def __init__(
        self,
        url: str,
        *,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        sqlite_busy_timeout: float = 30.0,
    ):
        self.url = make_url(url)
        self.is_sqlite = self.url.get_backend_name() == "sqlite"

        engine_kwargs: dict = {"echo": echo, "pool_pre_ping": not self.is_sqlite}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"timeout": sqlite_busy_timeout}
        else:
            engine_kwargs["pool_size"] = pool_size
            engine_kwargs["max_overflow"] = max_overflow

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)

        if self.is_sqlite:
            self._configure_sqlite(self.engine)

        self._sessionmaker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        logger.info(
            "database_configured",
            backend=self.url.get_backend_name(),
            driver=self.url.get_driver_name(),
        )

    @staticmethod
    def _configure_sqlite(engine: AsyncEngine) -> None:
        """
        Make SQLite behave like a serializing store.

        SQLite has no row locks, so every transaction takes the database
        write lock up front with BEGIN IMMEDIATE; concurrent writers wait
        on the busy timeout instead of interleaving read-modify-writes.
        """

        @event.listens_for(engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record) -> None:
            # Stop the driver from emitting its own BEGIN
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _on_begin(conn) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session for read-only work; released on exit."""
        async with self._sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside one atomic transaction (commit or full rollback)."""
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session

    async def create_all(self) -> None:
        """Create all tables (idempotent)."""
        import models  # noqa: F401  (registers mappers on Base.metadata)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_ready")

    async def dispose(self) -> None:
        """Close every pooled connection."""
        await self.engine.dispose()
        logger.info("database_disposed")


def get_database(request: Request) -> Database:
    """FastAPI dependency: the Database attached to the running app."""
    database: Optional[Database] = getattr(request.app.state, "database", None)
    if database is None:
        raise RuntimeError("Database has not been initialized")
    return database
