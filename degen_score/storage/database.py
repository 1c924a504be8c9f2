"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Manages the async SQLAlchemy engine and transactional sessions used by
the verification stores and the persistent cache.

- Creates the engine and schema
- Hands out sessions with explicit transaction boundaries
- Commits only if no exception occurs, rolls back on ANY exception

============================================================
SINGLE-CONNECTION DATABASES
============================================================
In-memory SQLite lives inside one shared connection (StaticPool).
Sessions on that connection would share a transaction, so transactions
are serialized with an asyncio.Lock for such URLs.

============================================================
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool


logger = logging.getLogger(__name__)


# =============================================================
# DECLARATIVE BASE
# =============================================================

Base = declarative_base()


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.endswith("://"))


class Database:
    """
    Async database handle.

    Usage:
        db = Database("sqlite+aiosqlite:///:memory:")
        await db.connect()
        async with db.transaction() as session:
            session.add(record)
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._single_connection = _is_memory_sqlite(url)
        self._lock = asyncio.Lock()

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected")
        return self._engine

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        """Create engine and schema. Idempotent."""
        if self._engine is not None:
            return

        kwargs = {"echo": self.echo, "future": True}
        if self._single_connection:
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}

        logger.info(f"Creating database engine for: {self.url.split('@')[-1]}")
        self._engine = create_async_engine(self.url, **kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            autoflush=False,
            expire_on_commit=False,
        )

        # Import registers the ORM tables on Base.metadata
        from . import models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session with an explicit transaction boundary.

        Commits only if no exception occurs; rolls back and re-raises
        otherwise.
        """
        if self._session_factory is None:
            await self.connect()

        if self._single_connection:
            async with self._lock:
                async with self._scope() as session:
                    yield session
        else:
            async with self._scope() as session:
                yield session

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[AsyncSession]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error, rolling back: {e}")
            await session.rollback()
            raise
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def health_check(self) -> bool:
        """True if a trivial query succeeds."""
        try:
            async with self.transaction() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database health check failed: {e}")
            return False
