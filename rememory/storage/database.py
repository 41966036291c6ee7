"""Async database engine and session management."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from rememory.config import Settings
from rememory.storage.models import Base


class Database:
    """Owns the engine and session factory.

    Construction is cheap; the engine is created lazily, exactly once,
    on the first connect() so tests can build components without I/O.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            url = self._settings.db_url
            kwargs: dict = {"echo": self._settings.log_level == "debug"}
            if url.startswith("postgresql"):
                kwargs["pool_size"] = self._settings.db_pool_size
                kwargs["max_overflow"] = self._settings.db_max_overflow
            elif ":memory:" in url:
                # One shared connection, otherwise each session sees an empty db
                kwargs["poolclass"] = StaticPool
            self._engine = create_async_engine(url, **kwargs)
            self._session_factory = async_sessionmaker(
                self._engine, class_=AsyncSession, expire_on_commit=False
            )
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        self.engine
        assert self._session_factory is not None
        return self._session_factory

    async def connect(self) -> None:
        """Verify connectivity and create tables when auto_create_schema is on."""
        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        if self._settings.auto_create_schema:
            await self.create_schema()

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup."""
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
