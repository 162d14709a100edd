from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_order_id, now_ts
from .db import (
    Key, Order, Service,
    ORDER_COMPLETED, ORDER_FAILED, ORDER_PENDING,
)


class OrderLedger:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, *, key_id: int, service_id: int, target_url: str,
                     quantity: int) -> Order:
        order = Order(
            public_id=new_order_id(),
            key_id=key_id,
            service_id=service_id,
            target_url=target_url,
            quantity=quantity,
            status=ORDER_PENDING,
            created_at=now_ts(),
        )
        self.db.add(order)
        await self.db.flush()
        return order

    async def find_with_details(
        self, public_id: str
    ) -> Optional[Tuple[Order, Optional[Service], Optional[Key]]]:
        # outer joins: the service or key may have been deleted since
        result = await self.db.execute(
            select(Order, Service, Key)
            .outerjoin(Service, Service.id == Order.service_id)
            .outerjoin(Key, Key.id == Order.key_id)
            .where(Order.public_id == public_id)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1], row[2]

    async def list_all(self, status: Optional[str] = None,
                       limit: int = 200) -> List[Order]:
        stmt = select(Order)
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
        result = await self.db.execute(stmt.limit(limit))
        return list(result.scalars().all())

    async def mark_completed(self, order_id: int, response: Any,
                             provider_order_id: Optional[str] = None
                             ) -> Order:
        order = await self.db.get(Order, order_id)
        order.status = ORDER_COMPLETED
        order.response = response
        order.provider_order_id = provider_order_id
        order.completed_at = now_ts()
        await self.db.flush()
        return order

    async def mark_failed(self, order_id: int, error: str) -> Order:
        order = await self.db.get(Order, order_id)
        order.status = ORDER_FAILED
        order.response = {"error": error}
        await self.db.flush()
        return order

    async def set_status(self, order_id: int, status: str) -> Order:
        order = await self.db.get(Order, order_id)
        order.status = status
        if status == ORDER_COMPLETED and order.completed_at is None:
            order.completed_at = now_ts()
        await self.db.flush()
        return order

    async def counts(self, since: Optional[float] = None) -> Dict[str, int]:
        rows = (await self.db.execute(
            select(Order.status, func.count()).group_by(Order.status)
        )).all()
        by_status = {status: n for status, n in rows}
        out = {
            "total": sum(by_status.values()),
            "completed": by_status.get(ORDER_COMPLETED, 0),
            "failed": by_status.get(ORDER_FAILED, 0),
        }
        if since is not None:
            out["since"] = (await self.db.execute(
                select(func.count()).select_from(Order)
                .where(Order.created_at >= since)
            )).scalar_one()
        return out
