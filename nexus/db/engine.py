"""Async engine and session lifecycle."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from nexus.config.schema import DatabaseConfig
from nexus.db.models import Base
from nexus.logging import get_logger

logger = get_logger(__name__)

# Dialects with an INSERT .. ON CONFLICT upsert
SUPPORTED_DIALECTS = frozenset({"postgresql", "sqlite"})


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Owns the engine for one process.

    Constructed once at startup and handed to everything that needs a
    session; nothing reaches for a module-level engine.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        backend = make_url(url).get_backend_name()
        if backend not in SUPPORTED_DIALECTS:
            raise ValueError(f"Unsupported database backend {backend!r}; use one of {sorted(SUPPORTED_DIALECTS)}")
        self.url = url
        kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            # Writers queue on the file lock instead of failing fast
            kwargs["connect_args"] = {"timeout": 30}
        self.engine = create_async_engine(url, **kwargs)
        if self.dialect == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "Database":
        return cls(config.resolved_url(), echo=config.echo)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready", dialect=self.dialect)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """A plain session; the caller decides when to commit."""
        async with self._sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """A session inside one transaction: commit on success, rollback on error."""
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.warning("database_ping_failed", error_type=type(e).__name__, error=str(e))
            return False
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()
