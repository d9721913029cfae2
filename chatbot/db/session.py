"""
Database Session Management - Async SQLAlchemy engine and session factory.

A Database object is built once in the application lifespan, kept on
app.state and disposed at shutdown. Nothing here caches a connection at
module level.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from chatbot.config import Settings
from chatbot.db.models import Base

SQLITE_BUSY_TIMEOUT = 30.0


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine for PostgreSQL or SQLite."""
    echo = settings.log_level == "DEBUG" if settings else False

    if database_url.startswith("sqlite"):
        # SQLite configuration for development and tests. An in-memory
        # database lives in one shared connection; a file database gets a
        # connection per session so writers wait on each other's locks.
        if ":memory:" in database_url:
            engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        else:
            engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
                poolclass=NullPool,
                echo=echo,
            )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if settings:
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
        )
    return create_async_engine(database_url, **kwargs)


class Database:
    """Owns the engine and session factory for one application instance."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(build_engine(settings.database_url, settings))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Get an async database session.

        Usage:
            async with database.session() as session:
                await session.execute(...)
                await session.commit()
        """
        async with self.session_factory() as session:
            try:
                yield session
            finally:
                await session.close()

    async def create_all(self) -> None:
        """Create tables directly from the ORM metadata (SQLite / tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close all pooled connections (for graceful shutdown)."""
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a database session.

    Usage:
        @app.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
