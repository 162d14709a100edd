from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.sql import Gated
from .db import Service

logger = logging.getLogger(__name__)

# attribute names accepted by create()/update()
SERVICE_FIELDS = (
    "name", "platform", "type", "icon", "is_active", "api_endpoint",
    "api_method", "api_headers", "request_template",
)


class ServiceCatalog:
    def __init__(self, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def list_active(self) -> List[Service]:
        result = await self.db.execute(
            select(Service)
            .where(Service.is_active.is_(True))
            .order_by(Service.name, Service.id)
        )
        return list(result.scalars().all())

    async def list_all(self) -> List[Service]:
        result = await self.db.execute(
            select(Service).order_by(Service.created_at.desc(),
                                     Service.id.desc())
        )
        return list(result.scalars().all())

    async def count_active(self) -> int:
        return (await self.db.execute(
            select(func.count()).select_from(Service)
            .where(Service.is_active.is_(True))
        )).scalar_one()

    async def get(self, service_id: int) -> Optional[Service]:
        """None means the service does not exist. is_active is not checked."""
        return await self.db.get(Service, service_id)

    def _build(self, fields: Dict[str, Any]) -> Service:
        values = {k: v for k, v in fields.items() if k in SERVICE_FIELDS}
        values.setdefault("is_active", True)
        values.setdefault("api_method", "POST")
        return Service(created_at=now_ts(), **values)

    async def create(self, fields: Dict[str, Any]) -> Service:
        service = self._build(fields)
        self.db.add(service)
        await self.db.flush()
        return service

    async def update(self, service_id: int,
                     updates: Dict[str, Any]) -> Optional[Service]:
        service = await self.db.get(Service, service_id)
        if service is None:
            return None
        for k, v in updates.items():
            if k in SERVICE_FIELDS:
                setattr(service, k, v)
        await self.db.flush()
        return service

    async def delete(self, service_id: int) -> bool:
        service = await self.db.get(Service, service_id)
        if service is None:
            return False
        await self.db.delete(service)
        await self.db.flush()
        return True

    async def bulk_create(
        self, items: List[Dict[str, Any]], chunk_size: int = 100,
    ) -> Tuple[List[Service], List[str]]:
        """
        Insert `items` in chunks, one transaction per chunk. A chunk that
        fails is rolled back, logged and skipped; the others still land.
        Must be called outside any open transaction on this session.
        """
        created: List[Service] = []
        errors: List[str] = []
        for start in range(0, len(items), chunk_size):
            chunk = items[start:start + chunk_size]
            rows = [self._build(fields) for fields in chunk]
            try:
                async with self.gated():
                    async with self.db.begin():
                        self.db.add_all(rows)
            except SQLAlchemyError as e:
                end = start + len(chunk)
                logger.warning(
                    "service import batch %d-%d failed: %s", start + 1, end, e
                )
                errors.append(
                    f"Services {start + 1}-{end}: batch insert failed"
                )
                continue
            created.extend(rows)
        return created, errors
