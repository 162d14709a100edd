"""
Async database handle: one engine, its session factory, and the gate
every transaction passes through.

The gate is a semaphore sized to the connection pool. Requests queue on
it instead of on the pool, so a burst of redemptions waits in order
rather than timing out inside SQLAlchemy.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
}

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
)


def normalize_async_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if sep and scheme in ASYNC_DRIVERS:
        return f"{ASYNC_DRIVERS[scheme]}://{rest}"
    return url


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(f"PRAGMA {pragma};")
    cur.close()


class Database:

    def __init__(self, database_url: str, *, pool_size: int = 10,
                 max_overflow: int = 10, pool_timeout: int = 30,
                 gate_limit: Optional[int] = None) -> None:
        self.url = normalize_async_url(database_url)

        kw = dict(pool_pre_ping=True)
        if self.is_postgres:
            kw.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
            )
        self.engine: AsyncEngine = create_async_engine(self.url, **kw)
        if self.is_sqlite:
            event.listen(self.engine.sync_engine, "connect", _sqlite_pragmas)

        self.sessionmaker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite+aiosqlite://")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgresql+asyncpg://")

    @asynccontextmanager
    async def gated(self) -> AsyncIterator[None]:
        async with self._gate:
            yield

    async def dispose(self) -> None:
        await self.engine.dispose()
