"""Database session management and connection handling."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from ..config import DEFAULT_DATABASE_URL
from . import models

logger = logging.getLogger(__name__)


def get_database_url(database_url: Optional[str] = None) -> str:
    """
    Resolve the database URL, falling back to the DATABASE_URL environment variable.
    Plain PostgreSQL URLs are rewritten to use the asyncpg driver.
    """
    db_url = database_url or os.getenv("DATABASE_URL")
    if db_url:
        if db_url.startswith("postgresql://"):
            db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif db_url.startswith("postgres://"):
            db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
        return db_url
    # Default to SQLite for local development/testing
    return DEFAULT_DATABASE_URL


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction start with BEGIN IMMEDIATE."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        pool_size: Number of connections to keep in the pool.
        max_overflow: Maximum overflow connections beyond pool_size.

    Returns:
        AsyncEngine instance.
    """
    url = get_database_url(database_url)

    if "sqlite" in url:
        kwargs = {"echo": echo, "connect_args": {"check_same_thread": False, "timeout": 30}}
        # In-memory databases only exist on a single connection
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        engine = sa_create_async_engine(url, **kwargs)
        _use_immediate_transactions(engine)
        return engine

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


def get_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Build an async session factory bound to an engine.

    Args:
        engine: Engine the sessions connect through.

    Returns:
        async_sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class DatabaseManager:
    """
    Owns the engine and session factory for one process.

    The API lifespan creates one when no service container is injected:

        db = DatabaseManager(settings.database_url)
        await db.initialize()
        container = build_container(settings, db.session_factory)
        ...
        await db.shutdown()
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.database_url = database_url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def _require_initialized(self) -> None:
        if self._engine is None or self._session_factory is None:
            raise RuntimeError("DatabaseManager.initialize() has not been awaited")

    @property
    def engine(self) -> AsyncEngine:
        self._require_initialized()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        self._require_initialized()
        return self._session_factory

    async def initialize(self, create_tables: bool = True) -> None:
        """Create the engine and, unless disabled, the order tables."""
        self._engine = create_async_engine(
            self.database_url,
            self.echo,
            self.pool_size,
            self.max_overflow,
        )
        self._session_factory = get_async_session_factory(self._engine)

        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(models.Base.metadata.create_all)
        logger.info(f"Order database ready ({self._engine.url.get_backend_name()})")

    async def shutdown(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Order database connections closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
