# model/__init__.py
from __future__ import annotations
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..infra.sql import Database, Gated
from .admins import AdminStore
from .db import Base
from .keys import KeyStore
from .logs import LogSink
from .orders import OrderLedger
from .services import ServiceCatalog


def open_database(settings: Settings) -> Database:
    return Database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )


async def create_schema(db: Database) -> None:
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@dataclass
class Storage:
    """
    One request's view of the database: the stores share a single
    session, so anything done inside one transaction() commits or rolls
    back together.
    """
    session: AsyncSession
    gated: Gated
    keys: KeyStore = field(init=False)
    services: ServiceCatalog = field(init=False)
    orders: OrderLedger = field(init=False)
    logs: LogSink = field(init=False)
    admins: AdminStore = field(init=False)

    def __post_init__(self) -> None:
        self.keys = KeyStore(self.session)
        self.services = ServiceCatalog(self.session, self.gated)
        self.orders = OrderLedger(self.session)
        self.logs = LogSink(self.session)
        self.admins = AdminStore(self.session)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self.gated():
            async with self.session.begin():
                yield


__all__ = [
    "Storage", "create_schema", "open_database", "KeyStore", "ServiceCatalog",
    "OrderLedger", "LogSink", "AdminStore",
]
