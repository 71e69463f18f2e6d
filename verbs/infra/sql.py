"""
Async engine, session factory and the DB gate.

The gate is a semaphore sized to the connection pool: coroutines wait on it
instead of piling up inside the pool's checkout timeout.
"""
import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def async_url(url: str) -> str:
    for prefix, driver in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


@dataclass
class GatedAsyncSession:
    """What request handlers get: one session plus the shared gate."""
    session: AsyncSession
    gated: Gated


class Database:
    def __init__(self, url: str, *, pool_size: int = 10,
                 max_overflow: int = 10, pool_timeout: int = 30,
                 gate_limit: Optional[int] = None) -> None:
        self.url = async_url(url)
        self.is_sqlite = self.url.startswith("sqlite+aiosqlite://")

        kw = dict(pool_pre_ping=True)
        if not self.is_sqlite:
            kw.update(pool_size=pool_size, max_overflow=max_overflow,
                      pool_timeout=pool_timeout)
        self.engine = create_async_engine(self.url, **kw)
        if self.is_sqlite:
            event.listen(self.engine.sync_engine, "connect", _sqlite_pragmas)

        self.sessions = async_sessionmaker(
            self.engine, class_=AsyncSession,
            expire_on_commit=False, autoflush=False,
        )
        self._gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    @classmethod
    def from_env(cls, url: str) -> "Database":
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        return cls(
            url,
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            gate_limit=int(os.getenv("DB_GATE_LIMIT", pool_size)),
        )

    @asynccontextmanager
    async def gated(self) -> AsyncIterator[None]:
        async with self._gate:
            yield

    @asynccontextmanager
    async def session(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.sessions() as s:
            yield GatedAsyncSession(session=s, gated=self.gated)

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.execute("PRAGMA foreign_keys=ON;")
    cur.close()
